"""Runtime configuration: dataclass defaults, env overrides and CLI flags.

Lookup order for every setting: CLI flag > environment variable > config
env file (``RATE_FOLLOWER_CONFIG_PATH``) > built-in default.
"""

from __future__ import annotations

import argparse
import os
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any, Optional

from .devices import parse_format_list
from .errors import ConfigError
from .engine import TrackPolicy
from .formats import SelectorFallback
from .sources import DEFAULT_LOG_COMMAND, EosPolicy

_DEFAULT_FORMATS = "44100:16,44100:24,48000:16,48000:24,88200:24,96000:24,176400:24,192000:24"
_DEFAULT_STREAM_FRESH_SEC = 10.0
_DEFAULT_FALLBACK_CACHE_SEC = 1.0
_DEFAULT_HEARTBEAT_SEC = 2.0
_DEFAULT_BURST_INTERVAL_SEC = 0.5
_DEFAULT_BURST_DURATION_SEC = 2.0
_DEFAULT_RETRY_DELAY_SEC = 1.0
_DEFAULT_CONFIRM_48K_DELAY_SEC = 1.0
_DEFAULT_LOG_RESTART_BACKOFF_SEC = 1.0
_DEFAULT_FALLBACK_TIMEOUT_SEC = 3.0
_DEFAULT_SCRIPT_TIMEOUT_SEC = 30.0
_DEFAULT_CONFIG_PATH = Path("~/.config/rate-follower/config.env")


@dataclass
class RateFollowerConfig:
    device_name: Optional[str] = None
    formats: str = _DEFAULT_FORMATS
    bit_depth_switching: bool = True
    track_policy: str = TrackPolicy.OVERRIDE.value
    selector_fallback: str = SelectorFallback.RELAX_BITS.value
    stream_fresh_sec: float = _DEFAULT_STREAM_FRESH_SEC
    fallback_cache_sec: float = _DEFAULT_FALLBACK_CACHE_SEC
    heartbeat_sec: float = _DEFAULT_HEARTBEAT_SEC
    burst_interval_sec: float = _DEFAULT_BURST_INTERVAL_SEC
    burst_duration_sec: float = _DEFAULT_BURST_DURATION_SEC
    retry_delay_sec: float = _DEFAULT_RETRY_DELAY_SEC
    confirm_48k_delay_sec: float = _DEFAULT_CONFIRM_48K_DELAY_SEC
    log_command: str = " ".join(DEFAULT_LOG_COMMAND[:2])
    log_eos_policy: str = EosPolicy.RESTART.value
    log_restart_backoff_sec: float = _DEFAULT_LOG_RESTART_BACKOFF_SEC
    fallback_enabled: bool = True
    fallback_timeout_sec: float = _DEFAULT_FALLBACK_TIMEOUT_SEC
    script_path: Optional[str] = None
    script_timeout_sec: float = _DEFAULT_SCRIPT_TIMEOUT_SEC
    status_path: Optional[Path] = None
    control_endpoint: Optional[str] = None
    dry_run: bool = False
    verbose: bool = False

    def validate(self) -> None:
        try:
            TrackPolicy(self.track_policy)
        except ValueError:
            raise ConfigError(f"track_policy must be one of {[p.value for p in TrackPolicy]}") from None
        try:
            SelectorFallback(self.selector_fallback)
        except ValueError:
            raise ConfigError(
                f"selector_fallback must be one of {[f.value for f in SelectorFallback]}"
            ) from None
        try:
            EosPolicy(self.log_eos_policy)
        except ValueError:
            raise ConfigError(f"log_eos_policy must be one of {[p.value for p in EosPolicy]}") from None
        if not parse_format_list(self.formats):
            raise ConfigError("formats must list at least one rate:bits entry")
        if self.stream_fresh_sec <= 0:
            raise ConfigError("stream_fresh_sec must be > 0")
        if self.fallback_cache_sec < 0:
            raise ConfigError("fallback_cache_sec must be >= 0")
        if self.heartbeat_sec <= 0:
            raise ConfigError("heartbeat_sec must be > 0")
        if self.burst_interval_sec <= 0:
            raise ConfigError("burst_interval_sec must be > 0")
        if self.burst_duration_sec < 0:
            raise ConfigError("burst_duration_sec must be >= 0")
        if self.retry_delay_sec < 0 or self.confirm_48k_delay_sec < 0:
            raise ConfigError("retry delays must be >= 0")
        if self.log_restart_backoff_sec < 0:
            raise ConfigError("log_restart_backoff_sec must be >= 0")
        if self.fallback_timeout_sec <= 0 or self.script_timeout_sec <= 0:
            raise ConfigError("timeouts must be > 0")
        if not self.log_command.strip():
            raise ConfigError("log_command must not be empty")
        if self.status_path is not None and not isinstance(self.status_path, Path):
            raise ConfigError("status_path must be a Path or None")

    @property
    def log_command_argv(self) -> list[str]:
        """``log stream`` gets the predicate/style arguments appended."""
        argv = self.log_command.split()
        if len(argv) == 2 and argv[1] == "stream" and Path(argv[0]).name == "log":
            return argv + list(DEFAULT_LOG_COMMAND[2:])
        return argv


CONFIG_ENV_MAP: dict[str, str] = {
    f.name: f"RATE_FOLLOWER_{f.name.upper()}"
    for f in fields(RateFollowerConfig)
}


def parse_env_file(path: Path) -> dict[str, str]:
    if not path.exists():
        return {}
    try:
        text = path.read_text()
    except OSError:
        return {}
    env: dict[str, str] = {}
    for line in text.splitlines():
        raw = line.strip()
        if not raw or raw.startswith("#"):
            continue
        if "=" not in raw:
            continue
        key, value = raw.split("=", 1)
        env[key.strip()] = value.strip()
    return env


def _config_path() -> Path:
    raw = os.getenv("RATE_FOLLOWER_CONFIG_PATH", "").strip()
    return Path(raw).expanduser() if raw else _DEFAULT_CONFIG_PATH.expanduser()


class _Lookup:
    def __init__(self, file_env: dict[str, str]) -> None:
        self._file_env = file_env

    def raw(self, name: str) -> Optional[str]:
        value = os.getenv(name)
        if value is not None:
            return value
        return self._file_env.get(name)

    def get_str(self, name: str, default: str) -> str:
        raw = self.raw(name)
        return default if raw is None else raw

    def get_opt_str(self, name: str, default: Optional[str]) -> Optional[str]:
        raw = self.raw(name)
        if raw is None:
            return default
        raw = raw.strip()
        return raw or None

    def get_float(self, name: str, default: float) -> float:
        raw = self.raw(name)
        if raw is None:
            return default
        try:
            return float(raw)
        except ValueError:
            return default

    def get_bool(self, name: str, default: bool) -> bool:
        raw = self.raw(name)
        if raw is None:
            return default
        return raw.strip().lower() in {"1", "true", "yes", "on"}

    def get_path(self, name: str, default: Optional[Path]) -> Optional[Path]:
        raw = self.get_opt_str(name, None)
        if raw is None:
            return default if self.raw(name) is None else None
        return Path(raw).expanduser()


def coerce_value(value: str, target_type: type[Any]) -> Any:
    if target_type is bool:
        return value.strip().lower() in {"1", "true", "yes", "on"}
    if target_type is int:
        return int(value)
    if target_type is float:
        return float(value)
    return value


def format_env_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if value is None:
        return ""
    return str(value)


def parse_args(argv: list[str] | None = None) -> RateFollowerConfig:
    env = _Lookup(parse_env_file(_config_path()))
    m = CONFIG_ENV_MAP
    parser = argparse.ArgumentParser(
        description="Follow the decoded track's sample rate / bit depth on the output device"
    )
    parser.add_argument("--device", dest="device_name", default=env.get_opt_str(m["device_name"], None),
                        help="output device name (default: system default device)")
    parser.add_argument("--formats", default=env.get_str(m["formats"], _DEFAULT_FORMATS),
                        help="formats of the in-memory device, e.g. 44100:16,96000:24")
    parser.add_argument("--bit-depth-switching", dest="bit_depth_switching", action="store_true",
                        default=env.get_bool(m["bit_depth_switching"], True),
                        help="write the physical format (rate + bits) (default: true)")
    parser.add_argument("--no-bit-depth-switching", dest="bit_depth_switching", action="store_false",
                        help="write only the nominal sample rate")
    parser.add_argument("--track-policy", default=env.get_str(m["track_policy"], TrackPolicy.OVERRIDE.value),
                        choices=[p.value for p in TrackPolicy])
    parser.add_argument("--selector-fallback",
                        default=env.get_str(m["selector_fallback"], SelectorFallback.RELAX_BITS.value),
                        choices=[f.value for f in SelectorFallback])
    parser.add_argument("--stream-fresh-sec", type=float,
                        default=env.get_float(m["stream_fresh_sec"], _DEFAULT_STREAM_FRESH_SEC))
    parser.add_argument("--fallback-cache-sec", type=float,
                        default=env.get_float(m["fallback_cache_sec"], _DEFAULT_FALLBACK_CACHE_SEC))
    parser.add_argument("--heartbeat-sec", type=float,
                        default=env.get_float(m["heartbeat_sec"], _DEFAULT_HEARTBEAT_SEC))
    parser.add_argument("--burst-interval-sec", type=float,
                        default=env.get_float(m["burst_interval_sec"], _DEFAULT_BURST_INTERVAL_SEC))
    parser.add_argument("--burst-duration-sec", type=float,
                        default=env.get_float(m["burst_duration_sec"], _DEFAULT_BURST_DURATION_SEC))
    parser.add_argument("--retry-delay-sec", type=float,
                        default=env.get_float(m["retry_delay_sec"], _DEFAULT_RETRY_DELAY_SEC))
    parser.add_argument("--confirm-48k-delay-sec", type=float,
                        default=env.get_float(m["confirm_48k_delay_sec"], _DEFAULT_CONFIRM_48K_DELAY_SEC))
    parser.add_argument("--log-command", default=env.get_str(m["log_command"], RateFollowerConfig.log_command),
                        help="log process command; 'log stream' gets the subsystem predicate appended")
    parser.add_argument("--log-eos-policy", default=env.get_str(m["log_eos_policy"], EosPolicy.RESTART.value),
                        choices=[p.value for p in EosPolicy])
    parser.add_argument("--log-restart-backoff-sec", type=float,
                        default=env.get_float(m["log_restart_backoff_sec"], _DEFAULT_LOG_RESTART_BACKOFF_SEC))
    parser.add_argument("--fallback", dest="fallback_enabled", action="store_true",
                        default=env.get_bool(m["fallback_enabled"], True),
                        help="query the player when no fresh log detection exists (default: true)")
    parser.add_argument("--no-fallback", dest="fallback_enabled", action="store_false")
    parser.add_argument("--fallback-timeout-sec", type=float,
                        default=env.get_float(m["fallback_timeout_sec"], _DEFAULT_FALLBACK_TIMEOUT_SEC))
    parser.add_argument("--script", dest="script_path", default=env.get_opt_str(m["script_path"], None),
                        help="executable run with the new rate (Hz) after each change")
    parser.add_argument("--script-timeout-sec", type=float,
                        default=env.get_float(m["script_timeout_sec"], _DEFAULT_SCRIPT_TIMEOUT_SEC))
    parser.add_argument("--status-path", type=Path, default=env.get_path(m["status_path"], None),
                        help="write the current status as JSON to this path")
    parser.add_argument("--control-endpoint", default=env.get_opt_str(m["control_endpoint"], None),
                        help="ZeroMQ REP endpoint for STATUS/TRACK/RECHECK (e.g. tcp://127.0.0.1:5590)")
    parser.add_argument("--dry-run", action="store_true", default=env.get_bool(m["dry_run"], False),
                        help="print the resolved configuration and exit")
    parser.add_argument("-v", "--verbose", action="store_true", default=env.get_bool(m["verbose"], False))
    args = parser.parse_args(argv)
    return RateFollowerConfig(
        device_name=args.device_name,
        formats=str(args.formats),
        bit_depth_switching=bool(args.bit_depth_switching),
        track_policy=str(args.track_policy),
        selector_fallback=str(args.selector_fallback),
        stream_fresh_sec=float(args.stream_fresh_sec),
        fallback_cache_sec=max(0.0, float(args.fallback_cache_sec)),
        heartbeat_sec=max(0.2, float(args.heartbeat_sec)),
        burst_interval_sec=max(0.1, float(args.burst_interval_sec)),
        burst_duration_sec=max(0.0, float(args.burst_duration_sec)),
        retry_delay_sec=max(0.0, float(args.retry_delay_sec)),
        confirm_48k_delay_sec=max(0.0, float(args.confirm_48k_delay_sec)),
        log_command=str(args.log_command),
        log_eos_policy=str(args.log_eos_policy),
        log_restart_backoff_sec=max(0.0, float(args.log_restart_backoff_sec)),
        fallback_enabled=bool(args.fallback_enabled),
        fallback_timeout_sec=float(args.fallback_timeout_sec),
        script_path=args.script_path,
        script_timeout_sec=float(args.script_timeout_sec),
        status_path=args.status_path,
        control_endpoint=args.control_endpoint,
        dry_run=bool(args.dry_run),
        verbose=bool(args.verbose),
    )


__all__ = [
    "CONFIG_ENV_MAP",
    "RateFollowerConfig",
    "coerce_value",
    "format_env_value",
    "parse_args",
    "parse_env_file",
]
