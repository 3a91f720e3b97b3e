"""Glue between detection, the decision engine and the output device.

Every public trigger only enqueues work on the ``DecisionScheduler``; the
actual evaluation (aggregate -> decide -> select -> write) always runs on
the decision thread and re-reads the latest state when it starts.
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Callable, Hashable, Optional, Sequence

from .aggregator import SignalAggregator
from .detection import DetectedFormat
from .devices import DeviceSource, OutputDevice, resolve_device
from .engine import Action, Decision, DecisionEngine
from .errors import DeviceUnavailableError, ErrorCode
from .formats import DeviceFormatCandidate, PhysicalFormat, SelectorFallback, select_format
from .scheduler import DecisionScheduler
from .sources import run_user_script
from .status import StatusStore

logger = logging.getLogger(__name__)

KEY_RETRY = "retry"
KEY_DOWNGRADE = "downgrade"
KEY_CONFIRM = "confirm-48k"
KEY_BURST = "burst"

ScriptRunner = Callable[..., object]


class RateController:
    def __init__(
        self,
        devices: DeviceSource,
        aggregator: SignalAggregator,
        *,
        engine: Optional[DecisionEngine] = None,
        scheduler: Optional[DecisionScheduler] = None,
        status: Optional[StatusStore] = None,
        device_name: Optional[str] = None,
        bit_depth_switching: bool = True,
        selector_fallback: SelectorFallback = SelectorFallback.RELAX_BITS,
        script_path: Optional[str] = None,
        script_timeout_sec: float = 30.0,
        script_runner: ScriptRunner = run_user_script,
        heartbeat_sec: float = 2.0,
        burst_interval_sec: float = 0.5,
        burst_duration_sec: float = 2.0,
        retry_delay_sec: float = 1.0,
        confirm_48k_delay_sec: float = 1.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.devices = devices
        self.aggregator = aggregator
        self.engine = engine or DecisionEngine()
        self.scheduler = scheduler or DecisionScheduler()
        self.status = status or StatusStore()
        self.device_name = device_name
        self.bit_depth_switching = bit_depth_switching
        self.selector_fallback = SelectorFallback(selector_fallback)
        self.script_path = script_path
        self.script_timeout_sec = script_timeout_sec
        self._script_runner = script_runner
        self.heartbeat_sec = heartbeat_sec
        self.burst_interval_sec = max(0.1, burst_interval_sec)
        self.burst_duration_sec = max(0.0, burst_duration_sec)
        self.retry_delay_sec = retry_delay_sec
        self.confirm_48k_delay_sec = confirm_48k_delay_sec
        self._clock = clock
        self._last_nominal_rate: Optional[float] = None
        self._pending_lock = threading.Lock()
        self._evaluation_pending = False
        self.last_decision: Optional[Decision] = None

    # --- lifecycle ---
    def start(self) -> None:
        with self._pending_lock:
            self._evaluation_pending = False
        self.scheduler.start()
        self.scheduler.submit(self._seed_status)
        self.scheduler.start_heartbeat(self.heartbeat_sec, self.evaluate)
        logger.info(
            "rate controller started (policy=%s, bit_depth_switching=%s, selector=%s)",
            self.engine.policy.value,
            self.bit_depth_switching,
            self.selector_fallback.value,
        )

    def stop(self) -> None:
        self.scheduler.stop()

    # --- triggers (any thread) ---
    def request_evaluation(self) -> None:
        """Queue one evaluation; requests made while one is queued are merged."""
        with self._pending_lock:
            if self._evaluation_pending:
                return
            self._evaluation_pending = True
        self.scheduler.submit(self._run_pending_evaluation)

    def _run_pending_evaluation(self) -> None:
        with self._pending_lock:
            self._evaluation_pending = False
        self.evaluate()

    def on_detection(self, detected: DetectedFormat) -> None:
        self.request_evaluation()

    def on_track_change(self, track_id: Optional[Hashable]) -> None:
        self.scheduler.submit(lambda: self._handle_track_change(track_id))

    def on_device_change(self) -> None:
        self.scheduler.submit(self._handle_device_change)

    # --- decision context ---
    def _current_device(self) -> Optional[OutputDevice]:
        return resolve_device(self.devices, self.device_name)

    def _device_formats(
        self, device: OutputDevice
    ) -> Optional[tuple[Sequence[float], Sequence[PhysicalFormat]]]:
        try:
            supported = device.nominal_sample_rates()
            formats = device.physical_formats()
        except DeviceUnavailableError as exc:
            logger.warning("%s", exc)
            self.status.update(last_error=str(exc))
            return None
        if not supported or not formats:
            logger.debug("[%s] no format list available", device.name)
            return None
        return supported, formats

    def evaluate(self, retry: bool = False, confirm: bool = False) -> Optional[Decision]:
        """One decision step. Must run on the decision thread."""
        now = self._clock()
        device = self._current_device()
        if device is None:
            logger.debug("[%s] no output device", ErrorCode.DEVICE_UNAVAILABLE.value)
            self._defer_retry(retry)
            return None
        formats = self._device_formats(device)
        if formats is None:
            self._defer_retry(retry)
            return None
        candidate = self.aggregator.current()
        if candidate is None:
            logger.debug("[%s] no fresh detection and no fallback reading", ErrorCode.NO_CANDIDATE.value)
            self._defer_retry(retry)
            return None

        decision = self.engine.decide(candidate, now)
        self.last_decision = decision
        logger.debug(
            "decision=%s rate=%.1f kHz bits=%d trust=%d (%s)",
            decision.action.value,
            candidate.sample_rate_khz,
            candidate.bit_depth,
            candidate.trust,
            decision.reason,
        )
        self._act(decision, device, formats, now, confirm=confirm)
        return decision

    def _act(
        self,
        decision: Decision,
        device: OutputDevice,
        formats: tuple[Sequence[float], Sequence[PhysicalFormat]],
        now: float,
        *,
        confirm: bool = False,
    ) -> None:
        if decision.action is Action.DEFER:
            self.scheduler.schedule(
                decision.delay_sec or self.retry_delay_sec,
                self.evaluate,
                key=KEY_DOWNGRADE,
            )
            return
        if decision.action is not Action.APPLY or decision.fmt is None:
            return
        applied = self._apply(decision.fmt, device, formats, now)
        if applied and not confirm and self.engine.needs_confirmation(decision):
            self.scheduler.schedule(
                self.confirm_48k_delay_sec,
                lambda: self.evaluate(confirm=True),
                key=KEY_CONFIRM,
            )

    def _apply(
        self,
        fmt: DetectedFormat,
        device: OutputDevice,
        formats: tuple[Sequence[float], Sequence[PhysicalFormat]],
        now: float,
    ) -> bool:
        supported, available = formats
        choice = select_format(
            fmt.sample_rate_hz, fmt.bit_depth, supported, available, self.selector_fallback
        )
        if choice is None:
            message = (
                f"[{ErrorCode.NO_SUITABLE_FORMAT.value}] {device.name} offers nothing for "
                f"{fmt.sample_rate_khz:.1f} kHz / {fmt.bit_depth} bit"
            )
            logger.warning(message)
            self.status.update(last_error=message)
            return False
        try:
            wrote = self._write(device, choice)
        except DeviceUnavailableError as exc:
            logger.warning("%s", exc)
            self.status.update(last_error=str(exc))
            return False

        self.engine.record_applied(choice.sample_rate_hz, now)
        self.scheduler.cancel(KEY_DOWNGRADE)
        previous = self.status.snapshot()
        changed = previous.sample_rate_hz != choice.sample_rate_hz
        self.status.update(
            sample_rate_hz=choice.sample_rate_hz,
            bit_depth=choice.bits_per_channel,
            device=device.name,
            trust=fmt.trust,
            last_error=None,
            changes=previous.changes + (1 if changed else 0),
        )
        if wrote or changed:
            logger.info(
                "[%s] output -> %.1f kHz / %d bit (detected %.1f kHz / %d bit, trust=%d)",
                device.name,
                choice.sample_rate_hz / 1000,
                choice.bits_per_channel,
                fmt.sample_rate_khz,
                fmt.bit_depth,
                fmt.trust,
            )
        if changed and self.script_path:
            self._script_runner(
                self.script_path, choice.sample_rate_hz, timeout_sec=self.script_timeout_sec
            )
        return True

    def _write(self, device: OutputDevice, choice: DeviceFormatCandidate) -> bool:
        """Write-back; returns False when the device already matches."""
        if self.bit_depth_switching:
            if device.physical_format() == choice.physical:
                return False
            device.set_physical_format(choice.physical)
            return True
        if self._last_nominal_rate == choice.sample_rate_hz:
            return False
        device.set_nominal_sample_rate(choice.sample_rate_hz)
        self._last_nominal_rate = choice.sample_rate_hz
        return True

    def _defer_retry(self, retry: bool) -> None:
        if retry:
            # 1段だけ再試行し、それでも駄目なら次のトリガーまで何もしない
            logger.debug("retry still unresolved; waiting for next trigger")
            return
        self.scheduler.schedule(
            self.retry_delay_sec, lambda: self.evaluate(retry=True), key=KEY_RETRY
        )

    def _handle_track_change(self, track_id: Optional[Hashable]) -> None:
        now = self._clock()
        is_new = track_id != self.engine.state.current_track
        parked = self.engine.note_track_change(track_id, now)
        if not is_new:
            return
        self.status.update(track_id=None if track_id is None else str(track_id))
        if track_id is None:
            return
        logger.debug("track changed -> %s", track_id)

        if parked is not None and parked.fmt is not None:
            device = self._current_device()
            formats = self._device_formats(device) if device is not None else None
            if device is not None and formats is not None:
                self.last_decision = parked
                self._act(parked, device, formats, now)
            else:
                # the engine keeps offering the parked format until it is written
                self._defer_retry(False)
        else:
            self.evaluate()
        self._schedule_burst()

    def _schedule_burst(self) -> None:
        count = int(self.burst_duration_sec / self.burst_interval_sec + 1e-9)
        for i in range(1, count + 1):
            self.scheduler.schedule(
                i * self.burst_interval_sec, self.evaluate, key=f"{KEY_BURST}-{i}"
            )

    def _handle_device_change(self) -> None:
        logger.info("output device changed; starting cold")
        self.engine.reset()
        self._last_nominal_rate = None
        self._seed_status()
        self.evaluate()

    def _seed_status(self) -> None:
        device = self._current_device()
        if device is None:
            return
        try:
            rate = device.nominal_sample_rate()
        except DeviceUnavailableError as exc:
            logger.warning("%s", exc)
            return
        self.status.update(sample_rate_hz=rate, device=device.name)


__all__ = ["RateController"]
