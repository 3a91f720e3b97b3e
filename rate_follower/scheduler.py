"""Serialized decision context with one-shot timers and a heartbeat.

All triggers (heartbeat, new detection, track change, device change,
retries) end up as jobs on a single worker thread, so engine state is never
touched by two decisions at once. Timers only enqueue work; they never run
decision code themselves.
"""

from __future__ import annotations

import logging
import queue
import threading
from typing import Callable, Optional

logger = logging.getLogger(__name__)

Job = Callable[[], None]


class CancelToken:
    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


class DecisionScheduler:
    def __init__(self, name: str = "rate_decision") -> None:
        self._name = name
        self._queue: "queue.Queue[Optional[tuple[Optional[CancelToken], Job]]]" = queue.Queue()
        self._lock = threading.Lock()
        self._timers: dict[str, tuple[CancelToken, threading.Timer]] = {}
        self._anonymous: set[threading.Timer] = set()
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None
        self._heartbeat: threading.Thread | None = None

    # --- lifecycle ---
    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name=self._name, daemon=True)
        self._thread.start()

    def stop(self, timeout: float = 2.0) -> None:
        self._stop.set()
        with self._lock:
            timers = list(self._timers.values())
            anonymous = list(self._anonymous)
            self._timers.clear()
            self._anonymous.clear()
        for token, timer in timers:
            token.cancel()
            timer.cancel()
        for timer in anonymous:
            timer.cancel()
        self._queue.put(None)
        if self._thread:
            self._thread.join(timeout=timeout)
        if self._heartbeat:
            self._heartbeat.join(timeout=timeout)
        self._thread = None
        self._heartbeat = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def in_context(self) -> bool:
        return threading.current_thread() is self._thread

    # --- jobs ---
    def submit(self, fn: Job, token: Optional[CancelToken] = None) -> None:
        if self._stop.is_set():
            return
        self._queue.put((token, fn))

    def schedule(self, delay: float, fn: Job, key: Optional[str] = None) -> CancelToken:
        """Run ``fn`` on the decision thread after ``delay`` seconds.

        A new timer with the same ``key`` supersedes (cancels) the old one.
        """
        token = CancelToken()
        timer = threading.Timer(max(0.0, delay), self._fire, args=(token, fn, key))
        timer.daemon = True
        with self._lock:
            if key is not None:
                previous = self._timers.pop(key, None)
                if previous is not None:
                    previous[0].cancel()
                    previous[1].cancel()
                self._timers[key] = (token, timer)
            else:
                self._anonymous.add(timer)
        timer.start()
        return token

    def cancel(self, key: str) -> bool:
        with self._lock:
            entry = self._timers.pop(key, None)
        if entry is None:
            return False
        entry[0].cancel()
        entry[1].cancel()
        return True

    def pending_keys(self) -> list[str]:
        with self._lock:
            return sorted(self._timers)

    def _fire(self, token: CancelToken, fn: Job, key: Optional[str]) -> None:
        with self._lock:
            if key is not None:
                entry = self._timers.get(key)
                if entry is not None and entry[0] is token:
                    del self._timers[key]
            else:
                self._anonymous.discard(threading.current_thread())  # type: ignore[arg-type]
        if token.cancelled:
            return
        self.submit(fn, token)

    def start_heartbeat(self, interval_sec: float, fn: Job) -> None:
        if self._heartbeat and self._heartbeat.is_alive():
            return
        interval = max(0.1, float(interval_sec))

        def _beat() -> None:
            while not self._stop.wait(interval):
                self.submit(fn)

        self._heartbeat = threading.Thread(
            target=_beat, name=f"{self._name}_heartbeat", daemon=True
        )
        self._heartbeat.start()

    def _run(self) -> None:
        while True:
            item = self._queue.get()
            if item is None:
                break
            token, fn = item
            if token is not None and token.cancelled:
                continue
            try:
                fn()
            except Exception:  # noqa: BLE001
                logger.exception("decision job failed")


__all__ = ["CancelToken", "DecisionScheduler"]
