"""Tests for the hysteresis decision engine."""

from __future__ import annotations

import pytest

from rate_follower.engine import (
    DOWNGRADE_RECHECK_SEC,
    Action,
    DecisionEngine,
    TrackPolicy,
)


def _engine_at(rate: float, now: float, policy: TrackPolicy = TrackPolicy.OVERRIDE) -> DecisionEngine:
    engine = DecisionEngine(policy)
    engine.record_applied(rate, now)
    return engine


def test_cold_start_applies_anything(make_format, clock) -> None:
    engine = DecisionEngine()
    decision = engine.decide(make_format(44100, trust=0), clock.now)
    assert decision.action is Action.APPLY
    assert decision.fmt.sample_rate_hz == 44100


def test_upgrade_to_48k_applies_and_requests_confirmation(make_format, clock) -> None:
    engine = _engine_at(44100, clock.now - 10)
    decision = engine.decide(make_format(48000, trust=1), clock.now)
    assert decision.action is Action.APPLY
    assert DecisionEngine.needs_confirmation(decision)


def test_small_upgrade_is_held_as_jitter(make_format, clock) -> None:
    engine = _engine_at(44100, clock.now - 10)
    decision = engine.decide(make_format(45000, trust=2), clock.now)
    assert decision.action is Action.HOLD
    assert not DecisionEngine.needs_confirmation(decision)


def test_low_trust_downgrade_is_debounced(make_format, clock) -> None:
    start = clock.now
    engine = _engine_at(96000, start - 10)

    first = engine.decide(make_format(44100, trust=1), start)
    assert first.action is Action.DEFER
    assert first.delay_sec == DOWNGRADE_RECHECK_SEC
    assert engine.state.pending_downgrade.sample_rate_hz == 44100

    second = engine.decide(make_format(44100, trust=1), start + 0.5)
    assert second.action is Action.HOLD

    third = engine.decide(make_format(44100, trust=1), start + 1.2)
    assert third.action is Action.APPLY
    assert third.fmt.sample_rate_hz == 44100
    assert engine.state.pending_downgrade is not None
    engine.record_applied(44100, start + 1.2)
    assert engine.state.pending_downgrade is None


def test_different_downgrade_target_restarts_debounce(make_format, clock) -> None:
    engine = _engine_at(192000, clock.now - 10)
    assert engine.decide(make_format(44100), clock.now).action is Action.DEFER
    clock.advance(1.5)
    decision = engine.decide(make_format(48000), clock.now)
    assert decision.action is Action.DEFER
    assert engine.state.pending_downgrade.sample_rate_hz == 48000


def test_decoder_downgrade_applies_immediately(make_format, clock) -> None:
    engine = _engine_at(96000, clock.now - 10)
    decision = engine.decide(make_format(44100, bits=16, trust=5), clock.now)
    assert decision.action is Action.APPLY


def test_stability_band_holds_and_clears_stale_bookkeeping(make_format, clock) -> None:
    engine = _engine_at(44100, clock.now)
    engine.decide(make_format(44100), clock.now)
    engine.state.pending_downgrade = make_format(32000)
    assert engine.decide(make_format(44500), clock.now + 1).action is Action.HOLD
    assert engine.state.pending_downgrade is not None
    assert engine.decide(make_format(44500), clock.now + 3).action is Action.HOLD
    assert engine.state.pending_downgrade is None


def test_override_bypasses_filters_once(make_format, clock) -> None:
    engine = _engine_at(96000, clock.now - 10)
    engine.note_track_change("track-2", clock.now)
    bypass = engine.decide(make_format(44100, trust=1), clock.now)
    assert bypass.action is Action.APPLY
    engine.record_applied(44100, clock.now)
    # bypass was consumed
    assert engine.decide(make_format(44500), clock.now + 0.1).action is Action.HOLD
    assert engine.decide(make_format(32000), clock.now + 0.2).action is Action.DEFER


def test_repeated_track_id_is_ignored(clock) -> None:
    engine = _engine_at(44100, clock.now)
    engine.note_track_change("a", clock.now)
    engine.state.track_just_changed = False
    assert engine.note_track_change("a", clock.now + 1) is None
    assert engine.state.track_just_changed is False


def test_prebuffer_parks_late_reading_until_next_track(make_format, clock) -> None:
    engine = _engine_at(44100, clock.now - 20, TrackPolicy.PREBUFFER)
    engine.note_track_change("song-1", clock.now - 10)

    suspect = engine.decide(make_format(96000, trust=1), clock.now)
    assert suspect.action is Action.SUSPECT_HOLD
    assert engine.state.pending_pre_buffer.sample_rate_hz == 96000

    released = engine.note_track_change("song-2", clock.now + 1)
    assert released is not None
    assert released.action is Action.APPLY
    assert released.fmt.sample_rate_hz == 96000
    engine.record_applied(96000, clock.now + 1)
    assert engine.state.pending_pre_buffer is None
    assert engine.state.pre_buffer_due is False


def test_parked_format_is_offered_until_written(make_format, clock) -> None:
    engine = _engine_at(44100, clock.now - 20, TrackPolicy.PREBUFFER)
    engine.note_track_change("song-1", clock.now - 10)
    engine.decide(make_format(96000, trust=1), clock.now)
    engine.note_track_change("song-2", clock.now + 1)

    # device write failed: nothing recorded, the next evaluation retries the parked format
    clock.advance(5)
    retry = engine.decide(make_format(96000, trust=1), clock.now)
    assert retry.action is Action.APPLY
    assert retry.reason == "parked format for new track"
    assert engine.state.pending_pre_buffer.sample_rate_hz == 96000


def test_override_survives_unwritten_apply(make_format, clock) -> None:
    engine = _engine_at(96000, clock.now - 10)
    engine.note_track_change("track-2", clock.now)
    assert engine.decide(make_format(44100, trust=1), clock.now).action is Action.APPLY
    assert engine.state.track_just_changed is True

    again = engine.decide(make_format(44100, trust=1), clock.now + 0.5)
    assert again.action is Action.APPLY
    assert again.reason == "track changed"
    engine.record_applied(44100, clock.now + 0.5)
    assert engine.state.track_just_changed is False


def test_confirmed_downgrade_survives_unwritten_apply(make_format, clock) -> None:
    start = clock.now
    engine = _engine_at(96000, start - 10)
    engine.decide(make_format(44100, trust=1), start)
    assert engine.decide(make_format(44100, trust=1), start + 1.2).action is Action.APPLY
    # still confirmed on the next cycle instead of restarting the debounce
    assert engine.decide(make_format(44100, trust=1), start + 2.0).action is Action.APPLY


@pytest.mark.parametrize(
    "rate, expected",
    [(105000, Action.APPLY), (104999, Action.HOLD), (110000, Action.APPLY)],
)
def test_upgrade_ratio_threshold_is_inclusive(make_format, clock, rate: float, expected: Action) -> None:
    engine = _engine_at(100000, clock.now - 10)
    assert engine.decide(make_format(rate, trust=1), clock.now).action is expected


def test_prebuffer_allows_changes_within_grace(make_format, clock) -> None:
    engine = _engine_at(44100, clock.now - 20, TrackPolicy.PREBUFFER)
    engine.note_track_change("song-1", clock.now - 1)
    assert engine.decide(make_format(96000), clock.now).action is Action.APPLY


def test_stopping_playback_drops_parked_format(make_format, clock) -> None:
    engine = _engine_at(44100, clock.now - 20, TrackPolicy.PREBUFFER)
    engine.note_track_change("song-1", clock.now - 10)
    engine.decide(make_format(96000), clock.now)
    assert engine.note_track_change(None, clock.now) is None
    assert engine.state.pending_pre_buffer is None


def test_policy_none_ignores_tracks(make_format, clock) -> None:
    engine = _engine_at(96000, clock.now - 10, TrackPolicy.NONE)
    assert engine.note_track_change("x", clock.now) is None
    assert engine.decide(make_format(44100, trust=1), clock.now).action is Action.DEFER


def test_reset_returns_to_cold_start_but_keeps_track(make_format, clock) -> None:
    engine = _engine_at(96000, clock.now)
    engine.note_track_change("t", clock.now)
    engine.reset()
    assert engine.state.current_applied_rate_hz is None
    assert engine.state.current_track == "t"
    assert engine.decide(make_format(96000), clock.now).action is Action.APPLY


@pytest.mark.parametrize("rate", [44100, 96000, 47999])
def test_only_48k_needs_confirmation(make_format, rate: float) -> None:
    decision = DecisionEngine().decide(make_format(rate), 0.0)
    assert not DecisionEngine.needs_confirmation(decision)
