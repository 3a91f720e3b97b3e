"""Output device interfaces and an in-memory implementation.

Platform bindings (CoreAudio など) live outside this package and only need
to satisfy ``OutputDevice`` / ``DeviceSource``. ``MemoryOutputDevice`` is
used for dry runs and tests.
"""

from __future__ import annotations

import logging
import threading
from typing import Callable, Optional, Protocol, Sequence

from .errors import DeviceUnavailableError
from .formats import PhysicalFormat

logger = logging.getLogger(__name__)


class OutputDevice(Protocol):
    name: str

    def nominal_sample_rate(self) -> Optional[float]: ...

    def nominal_sample_rates(self) -> Optional[Sequence[float]]: ...

    def physical_formats(self) -> Optional[Sequence[PhysicalFormat]]: ...

    def physical_format(self) -> Optional[PhysicalFormat]: ...

    def set_physical_format(self, fmt: PhysicalFormat) -> None: ...

    def set_nominal_sample_rate(self, rate_hz: float) -> None: ...


class DeviceSource(Protocol):
    def default_output_device(self) -> Optional[OutputDevice]: ...

    def output_devices(self) -> Sequence[OutputDevice]: ...


def parse_format_list(text: str) -> list[PhysicalFormat]:
    """``"44100:16,44100:24,96000:24"`` -> physical formats.

    A bare rate (``"48000"``) means 24 bit.
    """
    formats: list[PhysicalFormat] = []
    for item in text.split(","):
        entry = item.strip()
        if not entry:
            continue
        rate_raw, _, bits_raw = entry.partition(":")
        try:
            rate = float(rate_raw)
            bits = int(bits_raw) if bits_raw.strip() else 24
        except ValueError as exc:
            raise ValueError(f"invalid format entry: {entry!r}") from exc
        if rate <= 0 or bits <= 0:
            raise ValueError(f"invalid format entry: {entry!r}")
        formats.append(PhysicalFormat(rate, bits, handle=entry))
    return formats


class MemoryOutputDevice:
    """Device that keeps its format in memory and records every write."""

    def __init__(
        self,
        name: str,
        formats: Sequence[PhysicalFormat],
        *,
        initial: Optional[PhysicalFormat] = None,
    ) -> None:
        self.name = name
        self._lock = threading.Lock()
        self._formats = list(formats)
        self._current = initial or (self._formats[0] if self._formats else None)
        self._nominal = self._current.sample_rate_hz if self._current else None
        self.available = True
        self.writes: list[tuple[str, object]] = []

    def _check(self) -> None:
        if not self.available:
            raise DeviceUnavailableError(f"device {self.name} is not available")

    def nominal_sample_rate(self) -> Optional[float]:
        self._check()
        with self._lock:
            return self._nominal

    def nominal_sample_rates(self) -> Optional[Sequence[float]]:
        self._check()
        with self._lock:
            rates: list[float] = []
            for fmt in self._formats:
                if fmt.sample_rate_hz not in rates:
                    rates.append(fmt.sample_rate_hz)
            return rates

    def physical_formats(self) -> Optional[Sequence[PhysicalFormat]]:
        self._check()
        with self._lock:
            return list(self._formats)

    def physical_format(self) -> Optional[PhysicalFormat]:
        self._check()
        with self._lock:
            return self._current

    def set_physical_format(self, fmt: PhysicalFormat) -> None:
        self._check()
        with self._lock:
            if fmt not in self._formats:
                raise DeviceUnavailableError(f"{fmt.label()} is not offered by {self.name}")
            self._current = fmt
            self._nominal = fmt.sample_rate_hz
            self.writes.append(("physical", fmt))
        logger.info("[%s] physical format -> %s", self.name, fmt.label())

    def set_nominal_sample_rate(self, rate_hz: float) -> None:
        self._check()
        with self._lock:
            self._nominal = float(rate_hz)
            self.writes.append(("nominal", float(rate_hz)))
        logger.info("[%s] nominal rate -> %.1f kHz", self.name, rate_hz / 1000)


class StaticDeviceSource:
    """Fixed device list with manual change notifications."""

    def __init__(self, devices: Sequence[OutputDevice], default_index: int = 0) -> None:
        self._devices = list(devices)
        self._default_index = default_index
        self._listeners: list[Callable[[], None]] = []

    def default_output_device(self) -> Optional[OutputDevice]:
        if not self._devices:
            return None
        return self._devices[self._default_index]

    def output_devices(self) -> Sequence[OutputDevice]:
        return list(self._devices)

    def add_listener(self, callback: Callable[[], None]) -> None:
        self._listeners.append(callback)

    def set_default(self, index: int) -> None:
        self._default_index = index
        self._notify()

    def set_devices(self, devices: Sequence[OutputDevice], default_index: int = 0) -> None:
        self._devices = list(devices)
        self._default_index = default_index
        self._notify()

    def _notify(self) -> None:
        for callback in list(self._listeners):
            try:
                callback()
            except Exception:  # noqa: BLE001
                logger.exception("device change listener failed")


def resolve_device(source: DeviceSource, name: Optional[str] = None) -> Optional[OutputDevice]:
    """Explicitly selected device by name, else the system default."""
    if name:
        for device in source.output_devices():
            if device.name == name:
                return device
        logger.debug("selected device %s not found; using default", name)
    return source.default_output_device()


__all__ = [
    "DeviceSource",
    "MemoryOutputDevice",
    "OutputDevice",
    "StaticDeviceSource",
    "parse_format_list",
    "resolve_device",
]
