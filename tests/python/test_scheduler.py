"""Tests for the serialized decision scheduler (uses short real waits)."""

from __future__ import annotations

import threading
import time

import pytest

from rate_follower.scheduler import CancelToken, DecisionScheduler


@pytest.fixture
def scheduler():
    sched = DecisionScheduler(name="test_decision")
    sched.start()
    yield sched
    sched.stop()


def _wait_for(event: threading.Event, timeout: float = 2.0) -> bool:
    return event.wait(timeout)


def test_submit_runs_on_decision_thread(scheduler: DecisionScheduler) -> None:
    done = threading.Event()
    seen = {}

    def _job() -> None:
        seen["in_context"] = scheduler.in_context()
        done.set()

    scheduler.submit(_job)
    assert _wait_for(done)
    assert seen["in_context"] is True
    assert scheduler.in_context() is False


def test_jobs_run_in_submission_order(scheduler: DecisionScheduler) -> None:
    order: list[int] = []
    done = threading.Event()
    for i in range(5):
        scheduler.submit(lambda i=i: order.append(i))
    scheduler.submit(done.set)
    assert _wait_for(done)
    assert order == [0, 1, 2, 3, 4]


def test_failing_job_does_not_stop_worker(scheduler: DecisionScheduler) -> None:
    done = threading.Event()

    def _boom() -> None:
        raise RuntimeError("boom")

    scheduler.submit(_boom)
    scheduler.submit(done.set)
    assert _wait_for(done)


def test_scheduled_job_fires_after_delay(scheduler: DecisionScheduler) -> None:
    done = threading.Event()
    start = time.monotonic()
    scheduler.schedule(0.05, done.set, key="once")
    assert _wait_for(done)
    assert time.monotonic() - start >= 0.04
    assert scheduler.pending_keys() == []


def test_same_key_supersedes_previous_timer(scheduler: DecisionScheduler) -> None:
    fired: list[str] = []
    done = threading.Event()
    first = scheduler.schedule(0.05, lambda: fired.append("first"), key="retry")
    scheduler.schedule(0.1, lambda: (fired.append("second"), done.set()), key="retry")
    assert first.cancelled
    assert _wait_for(done)
    time.sleep(0.05)
    assert fired == ["second"]


def test_cancel_prevents_execution(scheduler: DecisionScheduler) -> None:
    fired = threading.Event()
    scheduler.schedule(0.05, fired.set, key="downgrade")
    assert scheduler.cancel("downgrade") is True
    assert scheduler.cancel("downgrade") is False
    assert not fired.wait(0.2)


def test_cancelled_token_skips_queued_job(scheduler: DecisionScheduler) -> None:
    gate = threading.Event()
    ran = threading.Event()
    done = threading.Event()
    token = CancelToken()
    scheduler.submit(lambda: gate.wait(1.0))
    scheduler.submit(ran.set, token)
    token.cancel()
    gate.set()
    scheduler.submit(done.set)
    assert _wait_for(done)
    assert not ran.is_set()


def test_heartbeat_submits_periodically(scheduler: DecisionScheduler) -> None:
    beats: list[float] = []
    enough = threading.Event()

    def _beat() -> None:
        beats.append(time.monotonic())
        if len(beats) >= 2:
            enough.set()

    scheduler.start_heartbeat(0.1, _beat)
    assert _wait_for(enough)


def test_stop_drops_pending_timers() -> None:
    sched = DecisionScheduler()
    sched.start()
    fired = threading.Event()
    sched.schedule(0.1, fired.set, key="confirm-48k")
    sched.stop()
    assert not sched.running
    assert sched.pending_keys() == []
    assert not fired.wait(0.2)
    sched.submit(fired.set)
    assert not fired.is_set()
