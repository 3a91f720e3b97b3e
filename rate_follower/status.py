"""Observable current-rate state shared with the presentation side."""

from __future__ import annotations

import json
import logging
import threading
import time
from dataclasses import asdict, dataclass, field, replace
from pathlib import Path
from typing import Any, Callable, Optional

logger = logging.getLogger(__name__)


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass(frozen=True)
class RateStatus:
    sample_rate_hz: Optional[float] = None
    bit_depth: Optional[int] = None
    device: Optional[str] = None
    trust: Optional[int] = None
    track_id: Optional[str] = None
    last_error: Optional[str] = None
    changes: int = 0
    updated_at_unix_ms: int = field(default_factory=_now_ms)

    @property
    def sample_rate_khz(self) -> Optional[float]:
        if self.sample_rate_hz is None:
            return None
        return round(self.sample_rate_hz / 1000.0, 1)

    @property
    def title(self) -> str:
        khz = self.sample_rate_khz
        if khz is None:
            return "-- kHz"
        return f"{khz:.1f} kHz"

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["sample_rate_khz"] = self.sample_rate_khz
        data["title"] = self.title
        return data


class StatusStore:
    """Lock-protected holder for the latest ``RateStatus``.

    Writes come from the decision thread; readers (control plane, API,
    presentation) may be on any thread.
    """

    def __init__(self, status_path: Path | None = None) -> None:
        self._lock = threading.Lock()
        self._status = RateStatus()
        self._status_path = status_path
        self._listeners: list[Callable[[RateStatus], None]] = []

    def snapshot(self) -> RateStatus:
        with self._lock:
            return self._status

    def subscribe(self, callback: Callable[[RateStatus], None]) -> None:
        with self._lock:
            self._listeners.append(callback)

    def update(self, **changes: Any) -> RateStatus:
        with self._lock:
            self._status = replace(self._status, updated_at_unix_ms=_now_ms(), **changes)
            status = self._status
            listeners = list(self._listeners)
        if self._status_path is not None:
            persist_status(self._status_path, status)
        for callback in listeners:
            try:
                callback(status)
            except Exception:  # noqa: BLE001
                logger.exception("status listener failed")
        return status


def persist_status(path: Path, status: RateStatus) -> None:
    """Write the status as JSON for out-of-process readers."""
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_name(path.name + ".tmp")
        tmp.write_text(json.dumps(status.to_dict()))
        tmp.replace(path)
    except OSError as exc:
        # 書き出し失敗で切替処理は止めない
        logger.debug("status write failed: %s", exc)


def load_status(path: Path) -> dict[str, Any]:
    if not path.exists():
        return RateStatus().to_dict()
    try:
        payload = json.loads(path.read_text())
    except (ValueError, OSError):
        return RateStatus(last_error="status file unreadable").to_dict()
    if not isinstance(payload, dict):
        return RateStatus(last_error="status file unreadable").to_dict()
    return payload


__all__ = ["RateStatus", "StatusStore", "load_status", "persist_status"]
