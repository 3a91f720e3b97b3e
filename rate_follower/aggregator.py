"""Fusion of the streamed detection, the fallback query and a short cache."""

from __future__ import annotations

import logging
import threading
import time
from typing import Callable, Optional

from .detection import DetectedFormat, fallback_format, normalize_fallback_rate

logger = logging.getLogger(__name__)

DEFAULT_FRESHNESS_SEC = 10.0
DEFAULT_FALLBACK_CACHE_SEC = 1.0

Subscriber = Callable[[DetectedFormat], None]


class LatestDetection:
    """Single-slot holder for the most recent streamed detection.

    The log reader thread publishes, the decision thread reads. Only
    immutable ``DetectedFormat`` values cross the boundary.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._latest: DetectedFormat | None = None
        self._subscribers: list[Subscriber] = []

    def publish(self, detected: DetectedFormat) -> None:
        with self._lock:
            self._latest = detected
            subscribers = list(self._subscribers)
        for callback in subscribers:
            try:
                callback(detected)
            except Exception:  # noqa: BLE001
                logger.exception("detection subscriber failed")

    def latest(self) -> DetectedFormat | None:
        with self._lock:
            return self._latest

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        with self._lock:
            self._subscribers.append(callback)

        def _unsubscribe() -> None:
            with self._lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return _unsubscribe

    def clear(self) -> None:
        with self._lock:
            self._latest = None


def is_fresh(detected: DetectedFormat, freshness_window: float, now: float) -> bool:
    return abs(now - detected.observed_at) < freshness_window


def best_candidate(
    streamed: Optional[DetectedFormat],
    fallback: Optional[DetectedFormat],
    freshness_window: float,
    now: float,
) -> Optional[DetectedFormat]:
    """Pick the detection to act on.

    A fresh streamed value always wins, whatever the fallback's trust.
    """
    if streamed is not None and is_fresh(streamed, freshness_window, now):
        return streamed
    return fallback


class SignalAggregator:
    """Combines the streamed provider with the on-demand fallback query.

    The fallback is only queried when the streamed value is stale, and its
    wrapped reading is reused for ``fallback_cache_sec`` so that frequent
    triggers do not hammer the player.
    """

    def __init__(
        self,
        provider: LatestDetection,
        fallback_query: Optional[Callable[[], Optional[float]]] = None,
        *,
        freshness_window: float = DEFAULT_FRESHNESS_SEC,
        fallback_cache_sec: float = DEFAULT_FALLBACK_CACHE_SEC,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._provider = provider
        self._fallback_query = fallback_query
        self.freshness_window = float(freshness_window)
        self.fallback_cache_sec = max(0.0, float(fallback_cache_sec))
        self._clock = clock
        self._cached_fallback: DetectedFormat | None = None
        self._last_query_at: float | None = None

    def _query_fallback(self, now: float) -> Optional[DetectedFormat]:
        if self._fallback_query is None:
            return None
        if (
            self._last_query_at is not None
            and now - self._last_query_at < self.fallback_cache_sec
        ):
            return self._cached_fallback
        self._last_query_at = now
        try:
            raw = self._fallback_query()
        except Exception as exc:  # noqa: BLE001
            logger.warning("fallback query failed: %s", exc)
            self._cached_fallback = None
            return None
        rate = normalize_fallback_rate(raw)
        if rate is None:
            self._cached_fallback = None
            return None
        self._cached_fallback = fallback_format(rate, now)
        return self._cached_fallback

    def current(self) -> Optional[DetectedFormat]:
        now = self._clock()
        streamed = self._provider.latest()
        if streamed is not None and is_fresh(streamed, self.freshness_window, now):
            return streamed
        return best_candidate(streamed, self._query_fallback(now), self.freshness_window, now)

    def invalidate_cache(self) -> None:
        self._cached_fallback = None
        self._last_query_at = None


__all__ = [
    "DEFAULT_FALLBACK_CACHE_SEC",
    "DEFAULT_FRESHNESS_SEC",
    "LatestDetection",
    "SignalAggregator",
    "best_candidate",
    "is_fresh",
]
