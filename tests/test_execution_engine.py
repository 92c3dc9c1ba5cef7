from __future__ import annotations

import asyncio
import os
import shutil
import subprocess
import sys
import time
from asyncio.subprocess import Process
from pathlib import Path

import pytest

from cmdtools.execution.base import (
    EXEC_FAILED,
    SPAWN_FAILED,
    TIMED_OUT,
    ExecConfig,
    ExecStreamHandler,
    ExecutionConfigError,
    ProcessErrorHandler,
    ProcessHandler,
    RedirectMode,
)
from cmdtools.execution.local_exec import LocalExecutor

PYTHON = sys.executable


def python_command(code: str) -> list[str]:
    return [PYTHON, "-c", code]


class RecordingErrorHandler(ProcessErrorHandler):
    def __init__(self) -> None:
        self.calls: list[tuple[Process | None, Exception]] = []

    def handle_error(self, process: Process | None, exc: Exception) -> None:
        self.calls.append((process, exc))


class RecordingProcessHandler(ProcessHandler):
    def __init__(self) -> None:
        self.processes: list[Process] = []

    def on_process_created(self, process: Process) -> None:
        self.processes.append(process)


class CollectingStreamHandler(ExecStreamHandler):
    def __init__(self) -> None:
        self.lines: list[str] = []

    def on_output_line(self, line: str) -> None:
        self.lines.append(line)


@pytest.mark.skipif(shutil.which("echo") is None, reason="echo binary not available")
def test_execute_echo_hello() -> None:
    result = LocalExecutor().run(["echo", "hello"])

    assert result.exit_code == 0
    assert result.out_msg == "hello"
    assert result.error_msg == ""
    assert result.cmd == "echo hello"


@pytest.mark.parametrize("code", [0, 1, 7])
def test_execute_returns_real_exit_code(code: int) -> None:
    result = LocalExecutor().run(python_command(f"import sys; sys.exit({code})"))

    assert result.exit_code == code
    assert result.ok is (code == 0)


def test_execute_captures_stdout_and_stderr_separately() -> None:
    script = (
        "import sys\n"
        "for i in range(3):\n"
        "    print(f'out {i}', flush=True)\n"
        "    print(f'err {i}', file=sys.stderr, flush=True)\n"
        "print('out 3')\n"
    )

    result = LocalExecutor().run(python_command(script))

    assert result.exit_code == 0
    assert result.out_msg == os.linesep.join(["out 0", "out 1", "out 2", "out 3"])
    assert result.error_msg == os.linesep.join(["err 0", "err 1", "err 2"])


def test_execute_drains_large_output_without_deadlock() -> None:
    script = (
        "import sys\n"
        "for i in range(20000):\n"
        "    sys.stderr.write('e' * 50 + '\\n')\n"
        "    sys.stdout.write('o' * 50 + '\\n')\n"
    )

    result = LocalExecutor().run(python_command(script), ExecConfig(timeout_s=30))

    assert result.exit_code == 0
    assert len(result.out_msg.split(os.linesep)) == 20000
    assert len(result.error_msg.split(os.linesep)) == 20000


def test_execute_stream_handler_receives_lines_in_order() -> None:
    handler = CollectingStreamHandler()
    script = "import sys\nfor i in range(5):\n    print(i)\nprint('oops', file=sys.stderr)\n"

    result = LocalExecutor().run(python_command(script), stream_handler=handler)

    assert result.exit_code == 0
    assert handler.lines == ["0", "1", "2", "3", "4"]
    assert result.out_msg == ""
    assert result.error_msg == "oops"


def test_execute_rejects_custom_redirect_with_stream_handler(tmp_path: Path) -> None:
    process_handler = RecordingProcessHandler()
    config = ExecConfig(
        redirect=RedirectMode.CUSTOM,
        output_file=tmp_path / "out.txt",
        error_file=tmp_path / "err.txt",
    )

    with pytest.raises(ExecutionConfigError):
        LocalExecutor().run(
            python_command("print('never')"),
            config,
            process_handler=process_handler,
            stream_handler=CollectingStreamHandler(),
        )

    assert process_handler.processes == []
    assert not (tmp_path / "out.txt").exists()


def test_execute_rejects_empty_command() -> None:
    with pytest.raises(ExecutionConfigError):
        LocalExecutor().run([])


def test_execute_times_out_with_negative_exit_code() -> None:
    error_handler = RecordingErrorHandler()
    start = time.monotonic()

    result = LocalExecutor().run(
        python_command("import time; time.sleep(30)"),
        ExecConfig(timeout_s=1),
        error_handler=error_handler,
    )

    assert time.monotonic() - start < 10
    assert result.exit_code == EXEC_FAILED
    assert "timed out" in result.error_msg
    assert len(error_handler.calls) == 1
    process, exc = error_handler.calls[0]
    assert isinstance(exc, subprocess.TimeoutExpired)
    assert process is not None
    assert process.returncode is not None


def test_execute_keeps_output_written_before_timeout() -> None:
    script = "import time\nprint('started', flush=True)\ntime.sleep(30)\n"

    result = LocalExecutor().run(python_command(script), ExecConfig(timeout_s=1))

    assert result.exit_code == EXEC_FAILED
    assert result.out_msg == "started"


def test_execute_spawn_failure_routes_to_error_handler() -> None:
    error_handler = RecordingErrorHandler()

    result = LocalExecutor().run(
        ["cmdtools-definitely-missing-binary"],
        error_handler=error_handler,
    )

    assert result.exit_code == EXEC_FAILED
    assert result.out_msg == ""
    assert result.error_msg
    assert result.cmd == "cmdtools-definitely-missing-binary"
    assert len(error_handler.calls) == 1
    process, exc = error_handler.calls[0]
    assert process is None
    assert isinstance(exc, OSError)


def test_execute_bad_working_dir_is_reported(tmp_path: Path) -> None:
    result = LocalExecutor().run(
        python_command("pass"),
        ExecConfig(working_dir=tmp_path / "missing"),
    )

    assert result.exit_code == EXEC_FAILED
    assert result.error_msg


def test_execute_notifies_process_handler() -> None:
    process_handler = RecordingProcessHandler()

    result = LocalExecutor().run(python_command("pass"), process_handler=process_handler)

    assert result.exit_code == 0
    assert len(process_handler.processes) == 1
    assert process_handler.processes[0].pid > 0


def test_execute_merges_environment_overrides() -> None:
    script = "import os; print(os.environ['CMDTOOLS_TEST_VAR']); print('PATH' in os.environ)"

    result = LocalExecutor().run(
        python_command(script),
        ExecConfig(env={"CMDTOOLS_TEST_VAR": "yes"}),
    )

    assert result.out_msg == os.linesep.join(["yes", "True"])


def test_execute_uses_working_dir(tmp_path: Path) -> None:
    result = LocalExecutor().run(
        python_command("import os; print(os.getcwd())"),
        ExecConfig(working_dir=tmp_path),
    )

    assert Path(result.out_msg).resolve() == tmp_path.resolve()


def test_execute_omit_mode_discards_output() -> None:
    result = LocalExecutor().run(
        python_command("import sys; print('out'); print('err', file=sys.stderr)"),
        ExecConfig(redirect=RedirectMode.OMIT),
    )

    assert result.exit_code == 0
    assert result.out_msg == ""
    assert result.error_msg == ""


def test_execute_custom_redirect_writes_files(tmp_path: Path) -> None:
    out_file = tmp_path / "out.txt"
    err_file = tmp_path / "err.txt"

    result = LocalExecutor().run(
        python_command("import sys; sys.stdout.write('to file'); sys.stderr.write('to err')"),
        ExecConfig(redirect=RedirectMode.CUSTOM, output_file=out_file, error_file=err_file),
    )

    assert result.exit_code == 0
    assert result.out_msg == ""
    assert out_file.read_text(encoding="utf-8") == "to file"
    assert err_file.read_text(encoding="utf-8") == "to err"


def test_execute_runs_concurrently_on_one_loop() -> None:
    executor = LocalExecutor()

    async def run_all() -> list[int]:
        results = await asyncio.gather(
            *[
                executor.execute(python_command(f"import time; time.sleep(1); print({i})"))
                for i in range(4)
            ]
        )
        return [int(result.out_msg) for result in results]

    start = time.monotonic()
    values = asyncio.run(run_all())

    assert values == [0, 1, 2, 3]
    assert time.monotonic() - start < 3.5


def test_drain_keeps_partial_output_on_read_error() -> None:
    class FailingReader:
        def __init__(self) -> None:
            self._lines = [b"first\r\n"]

        async def readline(self) -> bytes:
            if self._lines:
                return self._lines.pop(0)
            raise OSError("broken pipe")

    lines: list[str] = []

    asyncio.run(LocalExecutor()._drain(FailingReader(), lines.append, "stdout"))

    assert lines == ["first"]


def test_execute_timeout_is_not_delayed_by_busy_thread_pool() -> None:
    workers = min(32, (os.cpu_count() or 1) + 4)

    async def run_with_busy_pool() -> tuple[float, int]:
        loop = asyncio.get_running_loop()
        blockers = [loop.run_in_executor(None, time.sleep, 3) for _ in range(workers)]
        start = time.monotonic()
        result = await LocalExecutor().execute(
            python_command("import time; time.sleep(30)"),
            ExecConfig(timeout_s=1),
        )
        elapsed = time.monotonic() - start
        await asyncio.gather(*blockers)
        return elapsed, result.exit_code

    elapsed, exit_code = asyncio.run(run_with_busy_pool())

    assert exit_code == EXEC_FAILED
    assert elapsed < 2.5


@pytest.mark.skipif(os.name != "posix" or shutil.which("sh") is None, reason="needs POSIX sh")
def test_execute_timeout_kills_grandchildren_holding_pipes() -> None:
    start = time.monotonic()

    result = LocalExecutor().run(["sh", "-c", "sleep 8; echo done"], ExecConfig(timeout_s=1))

    assert time.monotonic() - start < 5
    assert result.exit_code == EXEC_FAILED
    assert "done" not in result.out_msg


@pytest.mark.skipif(os.name != "posix" or shutil.which("sh") is None, reason="needs POSIX sh")
def test_execute_returns_when_background_job_keeps_pipes_open() -> None:
    start = time.monotonic()

    result = LocalExecutor().run(["sh", "-c", "sleep 8 & echo started"], ExecConfig(timeout_s=2))

    assert time.monotonic() - start < 6
    assert result.exit_code == 0
    assert result.out_msg == "started"


@pytest.mark.skipif(os.name != "posix" or shutil.which("sh") is None, reason="needs POSIX sh")
def test_execute_sync_timeout_kills_process_group(tmp_path: Path) -> None:
    marker = tmp_path / "marker"

    status = LocalExecutor().execute_sync(
        ["sh", "-c", f"(sleep 2; touch '{marker}') & wait"],
        ExecConfig(timeout_s=0.5),
    )
    time.sleep(3)

    assert status == TIMED_OUT
    assert not marker.exists()


@pytest.mark.skipif(os.name != "posix", reason="POSIX signals")
def test_execute_reports_signal_death_as_positive_code() -> None:
    result = LocalExecutor().run(
        python_command("import os, signal; os.kill(os.getpid(), signal.SIGTERM)")
    )

    assert result.exit_code == 128 + 15


def test_execute_records_metrics() -> None:
    executor = LocalExecutor()

    executor.run(python_command("pass"))
    executor.run(python_command("import time; time.sleep(5)"), ExecConfig(timeout_s=0.5))

    snapshot = executor.observability.metrics.snapshot()
    assert snapshot["counters"]["executor.executions"] == 2
    assert snapshot["counters"]["executor.failures"] == 1
    assert snapshot["counters"]["executor.timeouts"] == 1
    assert snapshot["durations"]["executor.duration"]["count"] == 2.0


def test_execute_sync_redirects_stdout_to_file(tmp_path: Path) -> None:
    out_file = tmp_path / "out.txt"
    err_file = tmp_path / "err.txt"
    script = "import sys; sys.stdout.buffer.write(b'alpha\\nbeta\\n'); sys.stderr.write('warn')"

    status = LocalExecutor().execute_sync(
        python_command(script),
        ExecConfig(output_file=out_file, error_file=err_file),
    )

    assert status == 0
    assert out_file.read_bytes() == b"alpha\nbeta\n"
    assert err_file.read_text(encoding="utf-8") == "warn"


def test_execute_sync_returns_real_exit_code() -> None:
    assert LocalExecutor().execute_sync(python_command("import sys; sys.exit(4)")) == 4


def test_execute_sync_spawn_failure_sentinel() -> None:
    status = LocalExecutor().execute_sync(["cmdtools-definitely-missing-binary"])

    assert status == SPAWN_FAILED


def test_execute_sync_timeout_sentinel() -> None:
    start = time.monotonic()

    status = LocalExecutor().execute_sync(
        python_command("import time; time.sleep(30)"),
        ExecConfig(timeout_s=1),
    )

    assert status == TIMED_OUT
    assert time.monotonic() - start < 10
    assert SPAWN_FAILED != TIMED_OUT


def test_execute_sync_applies_environment(tmp_path: Path) -> None:
    out_file = tmp_path / "env.txt"

    status = LocalExecutor().execute_sync(
        python_command("import os; print(os.environ['CMDTOOLS_SYNC'], end='')"),
        ExecConfig(env={"CMDTOOLS_SYNC": "synced"}, output_file=out_file),
    )

    assert status == 0
    assert out_file.read_text(encoding="utf-8") == "synced"


def test_spawn_returns_live_process(tmp_path: Path) -> None:
    process = LocalExecutor().spawn(
        python_command("import os, sys; print(os.environ['CMDTOOLS_SPAWN'], sys.stdin.read())"),
        working_dir=tmp_path,
        env={"CMDTOOLS_SPAWN": "spawned"},
    )

    stdout, stderr = process.communicate("input", timeout=10)

    assert process.returncode == 0
    assert stdout.strip() == "spawned input"
    assert stderr == ""


def test_spawn_propagates_failures() -> None:
    executor = LocalExecutor()

    with pytest.raises(OSError):
        executor.spawn(["cmdtools-definitely-missing-binary"])
    with pytest.raises(ExecutionConfigError):
        executor.spawn([])
