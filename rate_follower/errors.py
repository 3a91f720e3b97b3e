"""Error codes for the rate follower.

Every error here is recovered locally; the codes exist so that log lines and
the status endpoints can name what went wrong in a stable way.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class ErrorCode(str, Enum):
    """Failure kinds surfaced in logs and status payloads."""

    NO_CANDIDATE = "NO_CANDIDATE"
    DEVICE_UNAVAILABLE = "DEVICE_UNAVAILABLE"
    NO_SUITABLE_FORMAT = "NO_SUITABLE_FORMAT"
    EXTERNAL_PROCESS_FAILED = "EXTERNAL_PROCESS_FAILED"
    USER_SCRIPT_FAILED = "USER_SCRIPT_FAILED"
    INVALID_CONFIG = "INVALID_CONFIG"


@dataclass
class RateFollowerError(Exception):
    """Base exception carrying a structured error code.

    Attributes:
        error_code: One of ``ErrorCode`` (e.g. ``DEVICE_UNAVAILABLE``)
        message: Human-readable error message
    """

    error_code: ErrorCode
    message: str

    def __str__(self) -> str:
        return f"[{self.error_code.value}] {self.message}"


class DeviceUnavailableError(RateFollowerError):
    def __init__(self, message: str) -> None:
        super().__init__(ErrorCode.DEVICE_UNAVAILABLE, message)


class ExternalProcessError(RateFollowerError):
    def __init__(self, message: str) -> None:
        super().__init__(ErrorCode.EXTERNAL_PROCESS_FAILED, message)


class UserScriptError(RateFollowerError):
    def __init__(self, message: str) -> None:
        super().__init__(ErrorCode.USER_SCRIPT_FAILED, message)


class ConfigError(RateFollowerError, ValueError):
    def __init__(self, message: str) -> None:
        super().__init__(ErrorCode.INVALID_CONFIG, message)


__all__ = [
    "ConfigError",
    "DeviceUnavailableError",
    "ErrorCode",
    "ExternalProcessError",
    "RateFollowerError",
    "UserScriptError",
]
