"""pytest configuration and fixtures for the rate follower tests."""

from __future__ import annotations

import sys
from pathlib import Path
from typing import Callable, Optional

import pytest

PROJECT_ROOT = Path(__file__).parent.parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from rate_follower.detection import DetectedFormat  # noqa: E402
from rate_follower.scheduler import CancelToken  # noqa: E402


class FakeClock:
    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> float:
        self.now += seconds
        return self.now


class FakeScheduler:
    """Runs submitted jobs inline and records timers instead of starting them."""

    def __init__(self) -> None:
        self.timers: dict[str, tuple[float, Callable[[], None], CancelToken]] = {}
        self.anonymous: list[tuple[float, Callable[[], None]]] = []
        self.heartbeat: Optional[tuple[float, Callable[[], None]]] = None
        self.started = False
        self.stopped = False

    def start(self) -> None:
        self.started = True

    def stop(self) -> None:
        self.stopped = True

    def submit(self, fn: Callable[[], None], token: Optional[CancelToken] = None) -> None:
        fn()

    def schedule(self, delay: float, fn: Callable[[], None], key: Optional[str] = None) -> CancelToken:
        token = CancelToken()
        if key is None:
            self.anonymous.append((delay, fn))
        else:
            previous = self.timers.get(key)
            if previous is not None:
                previous[2].cancel()
            self.timers[key] = (delay, fn, token)
        return token

    def cancel(self, key: str) -> bool:
        entry = self.timers.pop(key, None)
        if entry is None:
            return False
        entry[2].cancel()
        return True

    def start_heartbeat(self, interval_sec: float, fn: Callable[[], None]) -> None:
        self.heartbeat = (interval_sec, fn)

    def fire(self, key: str) -> None:
        delay, fn, token = self.timers.pop(key)
        _ = delay
        if not token.cancelled:
            fn()

    def delay_of(self, key: str) -> float:
        return self.timers[key][0]


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def fake_scheduler() -> FakeScheduler:
    return FakeScheduler()


@pytest.fixture
def make_format(clock: FakeClock) -> Callable[..., DetectedFormat]:
    def _make(rate: float, bits: int = 24, trust: int = 1, at: Optional[float] = None) -> DetectedFormat:
        return DetectedFormat(
            sample_rate_hz=rate,
            bit_depth=bits,
            observed_at=clock.now if at is None else at,
            trust=trust,
        )

    return _make
