"""Tests for the external process adapters (all processes are faked)."""

from __future__ import annotations

import subprocess

import pytest

from rate_follower.detection import TRUST_DECODER, TRUST_QUEUE
from rate_follower.errors import ErrorCode, ExternalProcessError
from rate_follower.sources import (
    DEFAULT_LOG_COMMAND,
    EosPolicy,
    LogStreamReader,
    MusicAppQuery,
    execute_user_script,
    parse_query_output,
    run_user_script,
)

DECODER_LINE = "ACAppleLosslessDecoder.cpp Input format: 2 ch, 96000 Hz, from 24-bit source\n"
QUEUE_LINE = "Creating AudioQueue sampleRate:44100.0, channels:2\n"


class FakeProc:
    def __init__(self, lines, returncode: int = 0) -> None:
        self.stdout = iter(lines)
        self.returncode = returncode
        self.terminated = False
        self.killed = False

    def wait(self, timeout=None):
        return self.returncode

    def terminate(self) -> None:
        self.terminated = True

    def kill(self) -> None:
        self.killed = True


class FakePopen:
    """Hands out the queued processes, then fails to spawn."""

    def __init__(self, *procs: FakeProc) -> None:
        self._procs = list(procs)
        self.calls = []

    def __call__(self, cmd, **kwargs):
        self.calls.append((cmd, kwargs))
        if not self._procs:
            raise FileNotFoundError("log")
        return self._procs.pop(0)


def test_reader_publishes_detections_and_stops_on_eos(clock) -> None:
    seen = []
    popen = FakePopen(FakeProc([DECODER_LINE, "noise\n", "\n", QUEUE_LINE]))
    reader = LogStreamReader(
        seen.append, eos_policy=EosPolicy.STOP, clock=clock, popen=popen
    )

    reader.run()

    assert [d.trust for d in seen] == [TRUST_DECODER, TRUST_QUEUE]
    assert seen[0].observed_at == clock.now
    assert reader.detections == 2
    assert reader.restarts == 0
    assert len(popen.calls) == 1
    cmd, kwargs = popen.calls[0]
    assert cmd == list(DEFAULT_LOG_COMMAND)
    assert kwargs["stdout"] == subprocess.PIPE
    assert kwargs["errors"] == "replace"


def test_reader_restarts_after_eos_until_spawn_fails(clock) -> None:
    seen = []
    popen = FakePopen(FakeProc([DECODER_LINE], returncode=1), FakeProc([QUEUE_LINE]))
    reader = LogStreamReader(
        seen.append,
        command=["log", "stream"],
        restart_backoff_sec=0,
        clock=clock,
        popen=popen,
    )

    reader.run()

    assert len(seen) == 2
    assert reader.restarts == 2
    assert len(popen.calls) == 3
    assert reader.last_error.startswith(f"[{ErrorCode.EXTERNAL_PROCESS_FAILED.value}]")


def _undecodable(lines):
    yield from lines
    raise UnicodeDecodeError("utf-8", b"\xff", 0, 1, "invalid start byte")


def test_reader_read_error_counts_as_end_of_stream(clock, caplog) -> None:
    seen = []
    popen = FakePopen(FakeProc(_undecodable([DECODER_LINE])), FakeProc([QUEUE_LINE]))
    reader = LogStreamReader(
        seen.append, restart_backoff_sec=0, clock=clock, popen=popen
    )

    reader.run()

    assert [d.trust for d in seen] == [TRUST_DECODER, TRUST_QUEUE]
    assert reader.restarts == 2
    assert "log stream read failed" in caplog.text


def test_reader_missing_binary_disables_streaming(clock) -> None:
    reader = LogStreamReader(lambda _d: None, clock=clock, popen=FakePopen())
    reader.run()
    assert reader.detections == 0
    assert "cannot start /usr/bin/log" in reader.last_error


def test_reader_stop_before_run_exits_immediately(clock) -> None:
    popen = FakePopen(FakeProc([DECODER_LINE]))
    reader = LogStreamReader(lambda _d: None, clock=clock, popen=popen)
    reader.stop()
    reader.run()
    assert popen.calls == []


@pytest.mark.parametrize(
    "stdout, expected",
    [
        ("96\n", 96.0),
        ("44,1\n", 44.1),
        ("44100.0", 44100.0),
        ("missing value\n", None),
        ("", None),
        ("n/a", None),
    ],
)
def test_parse_query_output(stdout: str, expected) -> None:
    assert parse_query_output(stdout) == expected


def test_music_query_runs_osascript() -> None:
    calls = []

    def _runner(cmd, **kwargs):
        calls.append((cmd, kwargs))
        return subprocess.CompletedProcess(cmd, 0, stdout="96\n", stderr="")

    query = MusicAppQuery(runner=_runner, timeout_sec=2.0)
    assert query() == 96.0
    cmd, kwargs = calls[0]
    assert cmd[0] == "osascript"
    assert cmd[1] == "-e"
    assert "sample rate of current track" in cmd[2]
    assert kwargs["timeout"] == 2.0


def test_music_query_nonzero_exit_is_no_reading() -> None:
    def _runner(cmd, **kwargs):
        return subprocess.CompletedProcess(cmd, 1, stdout="", stderr="not running")

    assert MusicAppQuery(runner=_runner)() is None


def test_music_query_missing_osascript_disables_itself() -> None:
    calls = []

    def _runner(cmd, **kwargs):
        calls.append(cmd)
        raise FileNotFoundError("osascript")

    query = MusicAppQuery(runner=_runner)
    with pytest.raises(ExternalProcessError):
        query()
    assert query.disabled
    assert query() is None
    assert len(calls) == 1


def test_music_query_timeout_raises() -> None:
    def _runner(cmd, **kwargs):
        raise subprocess.TimeoutExpired(cmd, kwargs["timeout"])

    with pytest.raises(ExternalProcessError) as excinfo:
        MusicAppQuery(runner=_runner)()
    assert excinfo.value.error_code is ErrorCode.EXTERNAL_PROCESS_FAILED


def test_user_script_gets_integer_rate() -> None:
    calls = []

    def _runner(cmd, **kwargs):
        calls.append((cmd, kwargs))
        return subprocess.CompletedProcess(cmd, 0, stdout="", stderr="")

    assert execute_user_script("/tmp/hook.sh", 44100.0, timeout_sec=5, runner=_runner) is True
    cmd, kwargs = calls[0]
    assert cmd == ["/tmp/hook.sh", "44100"]
    assert kwargs["check"] is True
    assert kwargs["timeout"] == 5


@pytest.mark.parametrize(
    "error",
    [
        subprocess.CalledProcessError(2, ["hook"], output="", stderr="bad"),
        subprocess.TimeoutExpired(["hook"], 5),
        PermissionError("not executable"),
    ],
)
def test_user_script_failures_are_logged_not_raised(error, caplog) -> None:
    def _runner(cmd, **kwargs):
        raise error

    assert execute_user_script("/tmp/hook.sh", 96000, runner=_runner) is False
    assert "USER_SCRIPT_FAILED" in caplog.text


def test_run_user_script_uses_background_thread() -> None:
    calls = []

    def _runner(cmd, **kwargs):
        calls.append(cmd)
        return subprocess.CompletedProcess(cmd, 0)

    thread = run_user_script("/tmp/hook.sh", 192000, timeout_sec=1, runner=_runner)
    thread.join(timeout=2)
    assert not thread.is_alive()
    assert calls == [["/tmp/hook.sh", "192000"]]
