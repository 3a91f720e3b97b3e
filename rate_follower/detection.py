"""Log line parsing for the detected playback format.

`log stream --style compact` の各行から (sample rate, bit depth) を推定する。
ソースごとに信頼度 (trust) が異なり、同時刻に複数のソースが食い違う場合は
trust の高い方を優先する。
"""

from __future__ import annotations

import math
import re
import time
from dataclasses import dataclass
from typing import Iterator, Optional

# Trust levels: decoder > AudioQueue > player metadata > fallback query
TRUST_DECODER = 5
TRUST_QUEUE = 2
TRUST_PLAYER = 1
TRUST_FALLBACK = 0

DECODER_MARKER = "ACAppleLosslessDecoder.cpp"
DECODER_INPUT_MARKER = "Input format:"
PLAYER_MARKER = "audioCapabilities:"
QUEUE_MARKER = "Creating AudioQueue"
QUEUE_RATE_TOKEN = "sampleRate:"

DEFAULT_PLAYER_BIT_DEPTH = 16
DEFAULT_QUEUE_BIT_DEPTH = 24
DEFAULT_FALLBACK_BIT_DEPTH = 24

# Player queries report kHz for anything below this (e.g. 44.1, 96, 352.8).
KHZ_THRESHOLD = 384.0

_FLOAT_RE = re.compile(r"^[-+]?(?:\d+(?:\.\d*)?|\.\d+)(?:[eE][-+]?\d+)?$")
_INT_RE = re.compile(r"^[-+]?\d+$")
_SCAN_FLOAT_RE = re.compile(r"\s*([-+]?(?:\d+(?:\.\d*)?|\.\d+)(?:[eE][-+]?\d+)?)")
_QUEUE_FIELD_SPLIT_RE = re.compile(r"[ ,\]]")
# compact style: "2024-05-01 12:00:00.123 Df Music[1234:5678] ..."
_SOURCE_TAG_RE = re.compile(r"^\d{4}-\d{2}-\d{2}\s+\S+\s+\S+\s+([^\s\[]+)\[\d+(?::[0-9a-fA-Fx]+)?\]")


@dataclass(frozen=True)
class DetectedFormat:
    """One normalized observation of the format being decoded."""

    sample_rate_hz: float
    bit_depth: int
    observed_at: float
    trust: int
    source_tag: Optional[str] = None

    @property
    def sample_rate_khz(self) -> float:
        return self.sample_rate_hz / 1000.0


def _between(text: str, start: str, end: str) -> Optional[str]:
    head = text.find(start)
    if head < 0:
        return None
    head += len(start)
    tail = text.find(end, head)
    if tail < 0:
        return None
    return text[head:tail]


def _to_float(raw: Optional[str]) -> Optional[float]:
    if raw is None:
        return None
    raw = raw.strip()
    if not _FLOAT_RE.match(raw):
        return None
    value = float(raw)
    if not math.isfinite(value) or value < 0:
        return None
    return value


def _to_int(raw: Optional[str]) -> Optional[int]:
    if raw is None:
        return None
    raw = raw.strip()
    if not _INT_RE.match(raw):
        return None
    return int(raw)


def _scan_float(text: str) -> Optional[float]:
    """Leading-float scan: skips whitespace, ignores whatever follows the number."""
    match = _SCAN_FLOAT_RE.match(text)
    if not match:
        return None
    return _to_float(match.group(1))


def _source_tag(line: str) -> Optional[str]:
    match = _SOURCE_TAG_RE.match(line)
    if not match:
        return None
    return match.group(1)


def _parse_decoder(line: str) -> Optional[tuple[float, int]]:
    if DECODER_MARKER not in line or DECODER_INPUT_MARKER not in line:
        return None
    rate = _to_float(_between(line, "ch, ", " Hz"))
    bits = _to_int(_between(line, "from ", "-bit source"))
    if rate is None or bits is None:
        return None
    return rate, bits


def _parse_player(line: str) -> Optional[tuple[float, int]]:
    if PLAYER_MARKER not in line:
        return None
    rate_khz = _to_float(_between(line, "asbdSampleRate = ", " kHz"))
    if rate_khz is None:
        return None
    bits = _to_int(_between(line, "sdBitDepth = ", " bit"))
    return rate_khz * 1000.0, bits if bits is not None else DEFAULT_PLAYER_BIT_DEPTH


def _parse_queue(line: str) -> Optional[tuple[float, int]]:
    if QUEUE_MARKER not in line or QUEUE_RATE_TOKEN not in line:
        return None
    after = line.split(QUEUE_RATE_TOKEN, 1)[1]
    rate = _scan_float(after)
    if rate is None:
        # e.g. "sampleRate:[44100]" は scan できないので括弧を外して区切り文字で切り出す
        field = _QUEUE_FIELD_SPLIT_RE.split(after.lstrip(" ["), 1)[0]
        rate = _to_float(field)
    if rate is None:
        return None
    return rate, DEFAULT_QUEUE_BIT_DEPTH


_PATTERNS = (
    (_parse_decoder, TRUST_DECODER),
    (_parse_player, TRUST_PLAYER),
    (_parse_queue, TRUST_QUEUE),
)


def parse_line(line: str, now: Optional[float] = None) -> Optional[DetectedFormat]:
    """Parse one log line into a ``DetectedFormat``.

    Returns ``None`` for lines that match no known source. Never raises.
    """
    if not line:
        return None
    for parser, trust in _PATTERNS:
        parsed = parser(line)
        if parsed is None:
            continue
        rate, bits = parsed
        return DetectedFormat(
            sample_rate_hz=rate,
            bit_depth=bits,
            observed_at=time.monotonic() if now is None else now,
            trust=trust,
            source_tag=_source_tag(line),
        )
    return None


def parse_lines(chunk: str, now: Optional[float] = None) -> Iterator[DetectedFormat]:
    """Yield every detection found in a multi-line chunk."""
    for line in chunk.splitlines():
        if not line:
            continue
        detected = parse_line(line, now)
        if detected is not None:
            yield detected


def normalize_fallback_rate(value: Optional[float]) -> Optional[float]:
    """Player query result -> Hz. Values below 384 are taken as kHz."""
    if value is None:
        return None
    try:
        rate = float(value)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(rate) or rate <= 0:
        return None
    if rate < KHZ_THRESHOLD:
        return rate * 1000.0
    return rate


def fallback_format(rate_hz: float, now: Optional[float] = None) -> DetectedFormat:
    """Wrap a normalized player query reading as a trust-0 detection."""
    return DetectedFormat(
        sample_rate_hz=rate_hz,
        bit_depth=DEFAULT_FALLBACK_BIT_DEPTH,
        observed_at=time.monotonic() if now is None else now,
        trust=TRUST_FALLBACK,
        source_tag="fallback",
    )


__all__ = [
    "DetectedFormat",
    "KHZ_THRESHOLD",
    "TRUST_DECODER",
    "TRUST_FALLBACK",
    "TRUST_PLAYER",
    "TRUST_QUEUE",
    "fallback_format",
    "normalize_fallback_rate",
    "parse_line",
    "parse_lines",
]
