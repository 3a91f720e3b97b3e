"""Hysteresis decision engine for output format changes.

The engine answers one question per trigger: given the best current
detection, should the device be moved to a new format now? It favours
keeping the current format when evidence is weak:

- near-identical rates are held (stability band);
- downgrades from low-trust sources must persist before they are applied,
  because stale 44.1 kHz readings are common while a hi-res track plays;
- small upgrades are treated as jitter;
- track changes either open a one-shot bypass (``override``) or are used to
  time changes that were read ahead of the playing track (``prebuffer``).

State is owned by a single engine instance and mutated only from the
decision context (see ``scheduler.DecisionScheduler``).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Hashable, Optional

from .detection import TRUST_DECODER, DetectedFormat

logger = logging.getLogger(__name__)

STABILITY_BAND_HZ = 1000.0
STALE_BOOKKEEPING_SEC = 3.0
DOWNGRADE_MATCH_HZ = 1.0
DOWNGRADE_CONFIRM_SEC = 1.0
DOWNGRADE_RECHECK_SEC = 1.2
UPGRADE_MIN_RATIO = 1.05
PREBUFFER_MIN_DIFF_HZ = 100.0
PREBUFFER_GRACE_SEC = 2.5
CONFIRM_RATE_HZ = 48000.0


class Action(str, Enum):
    APPLY = "apply"
    HOLD = "hold"
    DEFER = "defer"
    SUSPECT_HOLD = "suspect_hold"


class TrackPolicy(str, Enum):
    """How track-change notifications influence decisions."""

    OVERRIDE = "override"
    PREBUFFER = "prebuffer"
    NONE = "none"


@dataclass(frozen=True)
class Decision:
    action: Action
    fmt: Optional[DetectedFormat] = None
    delay_sec: Optional[float] = None
    reason: str = ""

    @property
    def applies(self) -> bool:
        return self.action is Action.APPLY


@dataclass
class EngineState:
    current_applied_rate_hz: Optional[float] = None
    last_change_at: float = 0.0
    pending_downgrade: Optional[DetectedFormat] = None
    pending_downgrade_since: float = 0.0
    pending_pre_buffer: Optional[DetectedFormat] = None
    pre_buffer_due: bool = False
    last_track_change_at: Optional[float] = None
    track_just_changed: bool = False
    current_track: Optional[Hashable] = field(default=None)

    @property
    def playing(self) -> bool:
        return self.current_track is not None


def _hold(reason: str) -> Decision:
    return Decision(Action.HOLD, reason=reason)


class DecisionEngine:
    def __init__(self, policy: TrackPolicy = TrackPolicy.OVERRIDE) -> None:
        self.policy = TrackPolicy(policy)
        self.state = EngineState()

    def reset(self) -> None:
        """Back to cold start, keeping what is known about the current track."""
        track = self.state.current_track
        track_at = self.state.last_track_change_at
        self.state = EngineState(current_track=track, last_track_change_at=track_at)

    # --- decisions ---
    def decide(self, candidate: DetectedFormat, now: float) -> Decision:
        st = self.state
        prev = st.current_applied_rate_hz
        rate = candidate.sample_rate_hz

        if prev is None or prev <= 0:
            return Decision(Action.APPLY, candidate, reason="cold start")

        # 以下の一時状態は record_applied() が書き込み成功後にだけ消す
        if self.policy is TrackPolicy.OVERRIDE and st.track_just_changed:
            return Decision(Action.APPLY, candidate, reason="track changed")

        if st.pre_buffer_due and st.pending_pre_buffer is not None:
            return Decision(
                Action.APPLY, st.pending_pre_buffer, reason="parked format for new track"
            )

        diff = abs(prev - rate)
        if diff < STABILITY_BAND_HZ:
            if now - st.last_change_at >= STALE_BOOKKEEPING_SEC:
                self._clear_downgrade()
                st.track_just_changed = False
            return _hold("within stability band")

        if self._looks_pre_buffered(diff, now):
            st.pending_pre_buffer = candidate
            return Decision(
                Action.SUSPECT_HOLD, candidate, reason="likely read-ahead of next track"
            )

        if rate < prev:
            decision = self._check_downgrade(candidate, now)
            if decision is not None:
                return decision
        elif rate / prev < UPGRADE_MIN_RATIO:
            return _hold("upgrade below jitter threshold")

        return Decision(Action.APPLY, candidate, reason="format change")

    def _looks_pre_buffered(self, diff: float, now: float) -> bool:
        st = self.state
        if self.policy is not TrackPolicy.PREBUFFER:
            return False
        if not st.playing or st.last_track_change_at is None:
            return False
        if diff <= PREBUFFER_MIN_DIFF_HZ:
            return False
        return now - st.last_track_change_at > PREBUFFER_GRACE_SEC

    def _check_downgrade(self, candidate: DetectedFormat, now: float) -> Optional[Decision]:
        """None means the downgrade is confirmed and may proceed."""
        st = self.state
        if candidate.trust >= TRUST_DECODER:
            return None

        pending = st.pending_downgrade
        if pending is not None and abs(pending.sample_rate_hz - candidate.sample_rate_hz) < DOWNGRADE_MATCH_HZ:
            if now - st.pending_downgrade_since > DOWNGRADE_CONFIRM_SEC:
                return None
            return _hold("downgrade awaiting confirmation")

        st.pending_downgrade = candidate
        st.pending_downgrade_since = now
        return Decision(
            Action.DEFER,
            candidate,
            delay_sec=DOWNGRADE_RECHECK_SEC,
            reason="downgrade from low-trust source",
        )

    def _clear_downgrade(self) -> None:
        self.state.pending_downgrade = None
        self.state.pending_downgrade_since = 0.0

    # --- bookkeeping ---
    def record_applied(self, rate_hz: float, now: float) -> None:
        """Called once the device actually runs at ``rate_hz``.

        Track override, pending downgrade and a released parked format are
        consumed here, so a failed write leaves them for the next attempt.
        """
        st = self.state
        st.current_applied_rate_hz = float(rate_hz)
        st.last_change_at = now
        st.track_just_changed = False
        if st.pre_buffer_due:
            st.pending_pre_buffer = None
            st.pre_buffer_due = False
        self._clear_downgrade()

    def note_track_change(self, track_id: Optional[Hashable], now: float) -> Optional[Decision]:
        """Register a track-change notification.

        Returns an APPLY decision when a parked read-ahead format becomes
        due (``prebuffer`` policy); otherwise ``None``.
        """
        st = self.state
        if track_id == st.current_track:
            return None
        st.current_track = track_id
        if track_id is None:
            # 再生停止: 次のトラックまで保留中の候補は無効
            st.pending_pre_buffer = None
            st.pre_buffer_due = False
            return None
        st.last_track_change_at = now

        if self.policy is TrackPolicy.OVERRIDE:
            st.track_just_changed = True
            return None
        if self.policy is TrackPolicy.PREBUFFER and st.pending_pre_buffer is not None:
            # decide() が書き込み成功まで同じ候補を返し続ける
            st.pre_buffer_due = True
            return Decision(
                Action.APPLY, st.pending_pre_buffer, reason="parked format for new track"
            )
        return None

    @staticmethod
    def needs_confirmation(decision: Decision) -> bool:
        """48 kHz is the system default and the usual misdetection."""
        return (
            decision.applies
            and decision.fmt is not None
            and decision.fmt.sample_rate_hz == CONFIRM_RATE_HZ
        )


__all__ = [
    "Action",
    "CONFIRM_RATE_HZ",
    "Decision",
    "DecisionEngine",
    "EngineState",
    "TrackPolicy",
]
