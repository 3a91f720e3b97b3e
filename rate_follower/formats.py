"""Target (rate, bits) -> hardware physical format selection."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Iterable, Optional, Sequence


class SelectorFallback(str, Enum):
    """What to do when no format combines the nearest rate and nearest bits."""

    STRICT = "strict"
    RELAX_BITS = "relax_bits"
    EUCLIDEAN = "euclidean"


@dataclass(frozen=True)
class PhysicalFormat:
    sample_rate_hz: float
    bits_per_channel: int
    # デバイス側の記述子 (ASBD など)。比較には使わない
    handle: Any = field(default=None, compare=False, repr=False)

    def label(self) -> str:
        return f"{self.sample_rate_hz / 1000:.1f} kHz / {self.bits_per_channel} bit"


@dataclass(frozen=True)
class DeviceFormatCandidate:
    sample_rate_hz: float
    bits_per_channel: int
    physical: PhysicalFormat


def _nearest(values: Iterable[float], target: float) -> Optional[float]:
    best: Optional[float] = None
    for value in values:
        # strict "<" keeps the first of equally distant values
        if best is None or abs(value - target) < abs(best - target):
            best = value
    return best


def _nearest_bits(formats: Sequence[PhysicalFormat], target_bits: int) -> Optional[PhysicalFormat]:
    best: Optional[PhysicalFormat] = None
    for fmt in formats:
        if best is None or abs(fmt.bits_per_channel - target_bits) < abs(best.bits_per_channel - target_bits):
            best = fmt
    return best


def _euclidean(formats: Sequence[PhysicalFormat], target_rate: float, target_bits: int) -> Optional[PhysicalFormat]:
    rate_scale = target_rate if target_rate > 0 else 1.0
    bits_scale = target_bits if target_bits > 0 else 1

    def _distance(fmt: PhysicalFormat) -> float:
        dr = (fmt.sample_rate_hz - target_rate) / rate_scale
        db = (fmt.bits_per_channel - target_bits) / bits_scale
        return dr * dr + db * db

    best: Optional[PhysicalFormat] = None
    for fmt in formats:
        if best is None or _distance(fmt) < _distance(best):
            best = fmt
    return best


def _candidate(fmt: PhysicalFormat) -> DeviceFormatCandidate:
    return DeviceFormatCandidate(
        sample_rate_hz=fmt.sample_rate_hz,
        bits_per_channel=fmt.bits_per_channel,
        physical=fmt,
    )


def select_format(
    target_rate_hz: float,
    target_bits: int,
    supported_rates: Iterable[float],
    available: Sequence[PhysicalFormat],
    fallback: SelectorFallback = SelectorFallback.RELAX_BITS,
) -> Optional[DeviceFormatCandidate]:
    """Choose the advertised physical format closest to the target.

    Rate and bit depth are matched independently (nearest supported nominal
    rate, nearest bit depth over all formats) and the pair is then looked up
    exactly. ``fallback`` decides what happens when that pair does not exist.
    """
    fallback = SelectorFallback(fallback)
    nearest_rate = _nearest(supported_rates, target_rate_hz)
    nearest_bits = _nearest_bits(available, target_bits)
    if nearest_rate is None or nearest_bits is None:
        return None

    for fmt in available:
        if fmt.sample_rate_hz == nearest_rate and fmt.bits_per_channel == nearest_bits.bits_per_channel:
            return _candidate(fmt)

    if fallback is SelectorFallback.RELAX_BITS:
        same_rate = [fmt for fmt in available if fmt.sample_rate_hz == nearest_rate]
        relaxed = _nearest_bits(same_rate, target_bits)
        return _candidate(relaxed) if relaxed is not None else None
    if fallback is SelectorFallback.EUCLIDEAN:
        best = _euclidean(available, target_rate_hz, target_bits)
        return _candidate(best) if best is not None else None
    return None


__all__ = [
    "DeviceFormatCandidate",
    "PhysicalFormat",
    "SelectorFallback",
    "select_format",
]
