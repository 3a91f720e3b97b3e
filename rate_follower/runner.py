"""CLI entry point: wire the log reader, fallback query, controller and control plane."""

from __future__ import annotations

import json
import logging
import signal
import sys
import threading
from dataclasses import asdict
from typing import Any, Optional

from .aggregator import LatestDetection, SignalAggregator
from .config import RateFollowerConfig, parse_args
from .controller import RateController
from .devices import DeviceSource, MemoryOutputDevice, StaticDeviceSource, parse_format_list
from .engine import DecisionEngine, TrackPolicy
from .formats import SelectorFallback
from .sources import EosPolicy, LogStreamReader, MusicAppQuery
from .status import StatusStore

logger = logging.getLogger(__name__)


def _setup_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%H:%M:%S",
    )


def _memory_devices(cfg: RateFollowerConfig) -> StaticDeviceSource:
    device = MemoryOutputDevice(cfg.device_name or "memory", parse_format_list(cfg.formats))
    return StaticDeviceSource([device])


class RateFollower:
    """Owns every long-running piece so they start and stop together."""

    def __init__(self, cfg: RateFollowerConfig, devices: Optional[DeviceSource] = None) -> None:
        self.cfg = cfg
        self.devices = devices if devices is not None else _memory_devices(cfg)
        self.provider = LatestDetection()
        fallback = MusicAppQuery(timeout_sec=cfg.fallback_timeout_sec) if cfg.fallback_enabled else None
        self.aggregator = SignalAggregator(
            self.provider,
            fallback,
            freshness_window=cfg.stream_fresh_sec,
            fallback_cache_sec=cfg.fallback_cache_sec,
        )
        self.status = StatusStore(cfg.status_path)
        self.controller = RateController(
            self.devices,
            self.aggregator,
            engine=DecisionEngine(TrackPolicy(cfg.track_policy)),
            status=self.status,
            device_name=cfg.device_name,
            bit_depth_switching=cfg.bit_depth_switching,
            selector_fallback=SelectorFallback(cfg.selector_fallback),
            script_path=cfg.script_path,
            script_timeout_sec=cfg.script_timeout_sec,
            heartbeat_sec=cfg.heartbeat_sec,
            burst_interval_sec=cfg.burst_interval_sec,
            burst_duration_sec=cfg.burst_duration_sec,
            retry_delay_sec=cfg.retry_delay_sec,
            confirm_48k_delay_sec=cfg.confirm_48k_delay_sec,
        )
        self.reader = LogStreamReader(
            self.provider.publish,
            command=cfg.log_command_argv,
            eos_policy=EosPolicy(cfg.log_eos_policy),
            restart_backoff_sec=cfg.log_restart_backoff_sec,
        )
        self.control: Any = None
        self._unsubscribe = None

    def start(self) -> None:
        add_listener = getattr(self.devices, "add_listener", None)
        if callable(add_listener):
            add_listener(self.controller.on_device_change)
        self._unsubscribe = self.provider.subscribe(self.controller.on_detection)
        self.controller.start()
        self.reader.start()
        if self.cfg.control_endpoint:
            # zmq は制御プレーンを使う時だけ import する
            from .control_plane import ControlPlaneServer

            self.control = ControlPlaneServer(
                endpoint=self.cfg.control_endpoint,
                status_provider=self.status.snapshot,
                on_track_change=self.controller.on_track_change,
                on_recheck=self.controller.request_evaluation,
            )
            self.control.start()

    def stop(self) -> None:
        if self.control is not None:
            self.control.stop()
            self.control = None
        self.reader.stop()
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        self.controller.stop()


def main(argv: list[str] | None = None) -> int:
    cfg = parse_args(argv)
    _setup_logging(cfg.verbose)
    try:
        cfg.validate()
    except ValueError as exc:
        logger.error("invalid configuration: %s", exc)
        return 2

    if cfg.dry_run:
        data = asdict(cfg)
        data["status_path"] = str(cfg.status_path) if cfg.status_path else None
        data["log_command_argv"] = cfg.log_command_argv
        print(json.dumps(data, indent=2))
        return 0

    follower = RateFollower(cfg)
    stop = threading.Event()

    def _handle_signal(signum, frame):  # noqa: ANN001
        _ = signum, frame
        stop.set()

    signal.signal(signal.SIGINT, _handle_signal)
    signal.signal(signal.SIGTERM, _handle_signal)

    follower.start()
    try:
        while not stop.wait(0.5):
            pass
    finally:
        follower.stop()
    return 0


if __name__ == "__main__":  # pragma: no cover - CLI entry
    sys.exit(main())
