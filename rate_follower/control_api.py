"""HTTP control API: current status and the persisted config env file."""

from __future__ import annotations

import argparse
import os
import shlex
import subprocess
import time
from dataclasses import asdict
from pathlib import Path
from typing import Any, Optional

from fastapi import FastAPI, HTTPException, Query
from pydantic import BaseModel, Field

from .config import CONFIG_ENV_MAP, RateFollowerConfig, coerce_value, format_env_value, parse_env_file
from .status import load_status

DEFAULT_HOST = os.getenv("RATE_FOLLOWER_API_HOST", "127.0.0.1").strip()
DEFAULT_PORT = int(os.getenv("RATE_FOLLOWER_API_PORT", "8095"))
DEFAULT_STATUS_PATH = Path(
    os.getenv("RATE_FOLLOWER_API_STATUS_PATH", "/tmp/rate-follower/status.json")
)
DEFAULT_CONFIG_PATH = Path(
    os.getenv("RATE_FOLLOWER_CONFIG_PATH", "~/.config/rate-follower/config.env")
).expanduser()
DEFAULT_RESTART_CMD = os.getenv("RATE_FOLLOWER_API_RESTART_CMD", "").strip()


class RateFollowerSettings(BaseModel):
    device_name: Optional[str] = None
    formats: str
    bit_depth_switching: bool
    track_policy: str = Field(pattern=r"^(override|prebuffer|none)$")
    selector_fallback: str = Field(pattern=r"^(strict|relax_bits|euclidean)$")
    stream_fresh_sec: float = Field(gt=0)
    fallback_cache_sec: float = Field(ge=0)
    heartbeat_sec: float = Field(gt=0)
    burst_interval_sec: float = Field(gt=0)
    burst_duration_sec: float = Field(ge=0)
    retry_delay_sec: float = Field(ge=0)
    confirm_48k_delay_sec: float = Field(ge=0)
    log_command: str = Field(min_length=1)
    log_eos_policy: str = Field(pattern=r"^(restart|stop)$")
    log_restart_backoff_sec: float = Field(ge=0)
    fallback_enabled: bool
    fallback_timeout_sec: float = Field(gt=0)
    script_path: Optional[str] = None
    script_timeout_sec: float = Field(gt=0)
    status_path: Optional[str] = None
    control_endpoint: Optional[str] = None


class RateFollowerSettingsUpdate(BaseModel):
    device_name: Optional[str] = None
    formats: Optional[str] = None
    bit_depth_switching: Optional[bool] = None
    track_policy: Optional[str] = Field(default=None, pattern=r"^(override|prebuffer|none)$")
    selector_fallback: Optional[str] = Field(
        default=None, pattern=r"^(strict|relax_bits|euclidean)$"
    )
    stream_fresh_sec: Optional[float] = Field(default=None, gt=0)
    fallback_cache_sec: Optional[float] = Field(default=None, ge=0)
    heartbeat_sec: Optional[float] = Field(default=None, gt=0)
    burst_interval_sec: Optional[float] = Field(default=None, gt=0)
    burst_duration_sec: Optional[float] = Field(default=None, ge=0)
    retry_delay_sec: Optional[float] = Field(default=None, ge=0)
    confirm_48k_delay_sec: Optional[float] = Field(default=None, ge=0)
    log_command: Optional[str] = Field(default=None, min_length=1)
    log_eos_policy: Optional[str] = Field(default=None, pattern=r"^(restart|stop)$")
    log_restart_backoff_sec: Optional[float] = Field(default=None, ge=0)
    fallback_enabled: Optional[bool] = None
    fallback_timeout_sec: Optional[float] = Field(default=None, gt=0)
    script_path: Optional[str] = None
    script_timeout_sec: Optional[float] = Field(default=None, gt=0)
    status_path: Optional[str] = None
    control_endpoint: Optional[str] = None


class StatusResponse(BaseModel):
    sample_rate_hz: Optional[float] = None
    sample_rate_khz: Optional[float] = None
    bit_depth: Optional[int] = None
    device: Optional[str] = None
    trust: Optional[int] = None
    track_id: Optional[str] = None
    title: str = "-- kHz"
    changes: int = 0
    last_error: Optional[str] = None
    updated_at_unix_ms: Optional[int] = None


_SETTINGS_FIELDS = tuple(RateFollowerSettings.model_fields)


def _default_settings() -> RateFollowerSettings:
    defaults = asdict(RateFollowerConfig())
    data = {name: defaults[name] for name in _SETTINGS_FIELDS}
    if data["status_path"] is not None:
        data["status_path"] = str(data["status_path"])
    return RateFollowerSettings(**data)


def _field_type(name: str) -> type[Any]:
    annotation = RateFollowerSettings.model_fields[name].annotation
    for candidate in (bool, float, int):
        if annotation is candidate:
            return candidate
    return str


def _load_settings(path: Path) -> RateFollowerSettings:
    data: dict[str, Any] = _default_settings().model_dump()
    env = parse_env_file(path)
    for field in _SETTINGS_FIELDS:
        env_key = CONFIG_ENV_MAP[field]
        if env_key not in env:
            continue
        value = env[env_key]
        if value == "" and RateFollowerSettings.model_fields[field].default is None:
            data[field] = None
            continue
        try:
            data[field] = coerce_value(value, _field_type(field))
        except ValueError:
            continue
    return RateFollowerSettings(**data)


def _write_settings(path: Path, settings: RateFollowerSettings) -> None:
    lines = [
        "# Auto-generated by rate_follower.control_api",
        f"# Updated at {time.strftime('%Y-%m-%d %H:%M:%S')}",
        "",
    ]
    data = settings.model_dump()
    for field in _SETTINGS_FIELDS:
        lines.append(f"{CONFIG_ENV_MAP[field]}={format_env_value(data.get(field))}")
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text("\n".join(lines) + "\n")


def _load_status(path: Path) -> StatusResponse:
    payload = load_status(path)
    known = {k: v for k, v in payload.items() if k in StatusResponse.model_fields}
    try:
        return StatusResponse(**known)
    except ValueError:
        return StatusResponse(last_error="status file unreadable")


def _run_restart(command: str) -> dict[str, Any]:
    if not command:
        raise HTTPException(status_code=400, detail="restart command is not configured")
    try:
        result = subprocess.run(
            shlex.split(command),
            check=True,
            capture_output=True,
            text=True,
            timeout=20,
        )
    except subprocess.CalledProcessError as exc:
        raise HTTPException(
            status_code=500,
            detail=f"restart failed: {exc.stderr.strip() or exc.stdout.strip()}",
        ) from exc
    except subprocess.TimeoutExpired as exc:
        raise HTTPException(status_code=504, detail="restart timed out") from exc
    except OSError as exc:
        raise HTTPException(status_code=500, detail=f"restart failed: {exc}") from exc
    return {
        "command": command,
        "stdout": result.stdout.strip(),
        "stderr": result.stderr.strip(),
    }


def create_app(
    *,
    config_path: Path = DEFAULT_CONFIG_PATH,
    status_path: Path = DEFAULT_STATUS_PATH,
    restart_cmd: str = DEFAULT_RESTART_CMD,
) -> FastAPI:
    app = FastAPI(title="Rate Follower Control API", version="1.0")

    @app.get("/api/v1/status", response_model=StatusResponse)
    def get_status() -> StatusResponse:
        return _load_status(status_path)

    @app.get("/api/v1/config", response_model=RateFollowerSettings)
    def get_config() -> RateFollowerSettings:
        return _load_settings(config_path)

    @app.put("/api/v1/config", response_model=RateFollowerSettings)
    def update_config(
        request: RateFollowerSettingsUpdate,
        apply: bool = Query(
            default=False, description="Restart the follower so the change takes effect"
        ),
    ) -> RateFollowerSettings:
        current = _load_settings(config_path)
        data = current.model_dump()
        data.update(request.model_dump(exclude_unset=True))
        merged = RateFollowerSettings(**data)
        _write_settings(config_path, merged)
        if apply:
            _run_restart(restart_cmd)
        return merged

    @app.post("/api/v1/actions/restart")
    def restart_follower() -> dict[str, Any]:
        return {"status": "ok", "result": _run_restart(restart_cmd)}

    return app


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Rate follower control API")
    parser.add_argument("--host", default=DEFAULT_HOST)
    parser.add_argument("--port", type=int, default=DEFAULT_PORT)
    parser.add_argument("--config", type=Path, default=DEFAULT_CONFIG_PATH)
    parser.add_argument("--status", type=Path, default=DEFAULT_STATUS_PATH)
    parser.add_argument(
        "--restart-cmd",
        default=DEFAULT_RESTART_CMD,
        help="command that restarts the follower (e.g. a launchctl kickstart line)",
    )
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> None:
    args = _parse_args(argv)
    app_instance = create_app(
        config_path=args.config,
        status_path=args.status,
        restart_cmd=args.restart_cmd,
    )
    from uvicorn import run

    run(app_instance, host=args.host, port=args.port, log_level="info")


if __name__ == "__main__":
    main()
