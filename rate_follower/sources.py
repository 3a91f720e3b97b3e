"""External process adapters: log stream reader, player query, user script."""

from __future__ import annotations

import logging
import re
import subprocess
import threading
import time
from enum import Enum
from typing import Any, Callable, Optional, Sequence

from .detection import DetectedFormat, parse_line
from .errors import ExternalProcessError, UserScriptError

logger = logging.getLogger(__name__)

LOG_PREDICATE = (
    '(subsystem == "com.apple.music" OR subsystem == "com.apple.coreaudio" '
    'OR subsystem == "com.apple.coremedia")'
)
DEFAULT_LOG_COMMAND: tuple[str, ...] = (
    "/usr/bin/log",
    "stream",
    "--predicate",
    LOG_PREDICATE,
    "--style",
    "compact",
)
DEFAULT_QUERY_SCRIPT = 'tell application "Music" to get sample rate of current track'
DEFAULT_QUERY_TIMEOUT_SEC = 3.0
DEFAULT_SCRIPT_TIMEOUT_SEC = 30.0

_NUMBER_RE = re.compile(r"^[-+]?(?:\d+(?:\.\d*)?|\.\d+)(?:[eE][-+]?\d+)?$")


class EosPolicy(str, Enum):
    """What the reader does when the log process ends its output."""

    RESTART = "restart"
    STOP = "stop"


class LogStreamReader:
    """Runs the log process and publishes each parsed detection.

    Only the parsed, immutable ``DetectedFormat`` leaves the reader thread.
    """

    def __init__(
        self,
        on_detection: Callable[[DetectedFormat], None],
        *,
        command: Sequence[str] = DEFAULT_LOG_COMMAND,
        eos_policy: EosPolicy = EosPolicy.RESTART,
        restart_backoff_sec: float = 1.0,
        clock: Callable[[], float] = time.monotonic,
        popen: Callable[..., Any] = subprocess.Popen,
    ) -> None:
        self._on_detection = on_detection
        self._command = list(command)
        self._eos_policy = EosPolicy(eos_policy)
        self._restart_backoff = max(0.0, float(restart_backoff_sec))
        self._clock = clock
        self._popen = popen
        self._stop = threading.Event()
        self._lock = threading.Lock()
        self._proc: Any = None
        self._thread: threading.Thread | None = None
        self.restarts = 0
        self.detections = 0
        self.last_error: Optional[str] = None

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self.run, name="log_stream", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stop.set()
        self._terminate()
        if self._thread and self._thread is not threading.current_thread():
            self._thread.join(timeout=3)
        self._thread = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def run(self) -> None:
        """Reader loop; runs on the caller's thread (``start`` wraps it)."""
        while not self._stop.is_set():
            proc = self._spawn()
            if proc is None:
                return
            try:
                self._pump(proc)
            except Exception:  # noqa: BLE001
                # 読み取りエラーも end of stream と同じ扱いにする
                logger.exception("log stream read failed")
            finally:
                rc = self._reap(proc)
            if self._stop.is_set():
                break
            if self._eos_policy is EosPolicy.STOP:
                logger.info("log stream ended (rc=%s); reader stopped", rc)
                break
            self.restarts += 1
            logger.warning(
                "log stream ended (rc=%s); restarting in %.1fs", rc, self._restart_backoff
            )
            if self._stop.wait(self._restart_backoff):
                break

    def _spawn(self) -> Any:
        try:
            proc = self._popen(
                self._command,
                stdout=subprocess.PIPE,
                stderr=subprocess.DEVNULL,
                text=True,
                errors="replace",
                bufsize=1,
            )
        except OSError as exc:
            err = ExternalProcessError(f"cannot start {self._command[0]}: {exc}")
            self.last_error = str(err)
            # fallback query が残っていれば検出は継続できる
            logger.warning("%s; streamed detection disabled", err)
            return None
        with self._lock:
            self._proc = proc
        logger.info("log stream started: %s", " ".join(self._command[:2]))
        return proc

    def _pump(self, proc: Any) -> None:
        stdout = proc.stdout
        if stdout is None:
            return
        for raw in stdout:
            if self._stop.is_set():
                break
            line = raw.rstrip("\r\n")
            if not line:
                continue
            detected = parse_line(line, self._clock())
            if detected is None:
                continue
            self.detections += 1
            logger.debug(
                "detected %.1f kHz / %d bit (trust=%d, source=%s)",
                detected.sample_rate_khz,
                detected.bit_depth,
                detected.trust,
                detected.source_tag,
            )
            self._on_detection(detected)

    def _reap(self, proc: Any) -> Optional[int]:
        try:
            return proc.wait(timeout=2)
        except subprocess.TimeoutExpired:
            proc.kill()
            return proc.wait()
        finally:
            with self._lock:
                if self._proc is proc:
                    self._proc = None

    def _terminate(self) -> None:
        with self._lock:
            proc = self._proc
        if proc is None:
            return
        try:
            proc.terminate()
            proc.wait(timeout=2)
        except subprocess.TimeoutExpired:
            proc.kill()
        except OSError:
            pass


def parse_query_output(stdout: str) -> Optional[float]:
    text = (stdout or "").strip()
    if not text or text == "missing value":
        return None
    text = text.replace(",", ".")
    if not _NUMBER_RE.match(text):
        return None
    return float(text)


class MusicAppQuery:
    """One-shot player query via ``osascript``. Returns the raw value."""

    def __init__(
        self,
        *,
        script: str = DEFAULT_QUERY_SCRIPT,
        timeout_sec: float = DEFAULT_QUERY_TIMEOUT_SEC,
        executable: str = "osascript",
        runner: Callable[..., Any] = subprocess.run,
    ) -> None:
        self._script = script
        self._timeout = timeout_sec
        self._executable = executable
        self._runner = runner
        self.disabled = False

    def __call__(self) -> Optional[float]:
        if self.disabled:
            return None
        try:
            result = self._runner(
                [self._executable, "-e", self._script],
                capture_output=True,
                text=True,
                errors="replace",
                timeout=self._timeout,
                check=False,
            )
        except FileNotFoundError as exc:
            self.disabled = True
            raise ExternalProcessError(f"{self._executable} not found; fallback query disabled") from exc
        except subprocess.TimeoutExpired as exc:
            raise ExternalProcessError(f"player query timed out after {self._timeout}s") from exc
        except OSError as exc:
            raise ExternalProcessError(f"player query failed: {exc}") from exc
        if result.returncode != 0:
            logger.debug("player query rc=%s: %s", result.returncode, (result.stderr or "").strip())
            return None
        return parse_query_output(result.stdout)


def execute_user_script(
    path: str,
    rate_hz: float,
    *,
    timeout_sec: float = DEFAULT_SCRIPT_TIMEOUT_SEC,
    runner: Callable[..., Any] = subprocess.run,
) -> bool:
    """Run the user's hook with the new rate (Hz, integer) as sole argument."""
    argument = str(int(rate_hz))
    try:
        runner(
            [path, argument],
            check=True,
            capture_output=True,
            text=True,
            errors="replace",
            timeout=timeout_sec,
        )
    except subprocess.CalledProcessError as exc:
        err = UserScriptError(
            f"{path} exited rc={exc.returncode}: {(exc.stderr or exc.stdout or '').strip()}"
        )
        logger.warning("%s", err)
        return False
    except subprocess.TimeoutExpired:
        logger.warning("%s", UserScriptError(f"{path} timed out after {timeout_sec}s"))
        return False
    except OSError as exc:
        logger.warning("%s", UserScriptError(f"{path} could not be started: {exc}"))
        return False
    logger.debug("user script %s ran with %s", path, argument)
    return True


def run_user_script(
    path: str,
    rate_hz: float,
    *,
    timeout_sec: float = DEFAULT_SCRIPT_TIMEOUT_SEC,
    runner: Callable[..., Any] = subprocess.run,
) -> threading.Thread:
    """Fire-and-forget wrapper around ``execute_user_script``."""
    thread = threading.Thread(
        target=execute_user_script,
        args=(path, rate_hz),
        kwargs={"timeout_sec": timeout_sec, "runner": runner},
        name="user_script",
        daemon=True,
    )
    thread.start()
    return thread


__all__ = [
    "DEFAULT_LOG_COMMAND",
    "EosPolicy",
    "LogStreamReader",
    "MusicAppQuery",
    "execute_user_script",
    "parse_query_output",
    "run_user_script",
]
