"""Local execution engine implementation."""

from __future__ import annotations

import asyncio
import os
import signal
import subprocess
import time
from asyncio.subprocess import Process
from contextlib import ExitStack
from pathlib import Path
from typing import Any, Callable, Final

from cmdtools.execution.base import (
    EXEC_FAILED,
    NOOP_ERROR_HANDLER,
    SPAWN_FAILED,
    TIMED_OUT,
    CommandExecutor,
    ExecConfig,
    ExecResult,
    ExecStreamHandler,
    ExecutionConfigError,
    ProcessErrorHandler,
    ProcessHandler,
    RedirectMode,
    format_command,
)
from cmdtools.util.logging import get_logger
from cmdtools.util.observability import (
    ExecutionRecord,
    ObservabilityManager,
    create_observability_manager,
)

# How long drains may keep collecting output after the child is gone.
_DRAIN_GRACE_S: Final[float] = 2.0
# Longest stdout/stderr line; a longer one ends the capture of that stream.
_LINE_LIMIT: Final[int] = 1024 * 1024
_NEW_SESSION: Final[bool] = os.name == "posix"


class LocalExecutor(CommandExecutor):
    """Execute commands on the local host."""

    def __init__(self, observability: ObservabilityManager | None = None) -> None:
        """Initialize the executor.

        Args:
            observability: Optional metrics and event sink. A private one is
                created when omitted.
        """

        self._observability = observability or create_observability_manager()
        self._logger = get_logger(self.__class__.__name__)

    @property
    def observability(self) -> ObservabilityManager:
        return self._observability

    async def execute(
        self,
        command: list[str],
        config: ExecConfig | None = None,
        *,
        error_handler: ProcessErrorHandler = NOOP_ERROR_HANDLER,
        process_handler: ProcessHandler | None = None,
        stream_handler: ExecStreamHandler | None = None,
    ) -> ExecResult:
        """Run a command locally, draining stdout and stderr concurrently.

        The child runs as an asyncio subprocess and both streams are read on
        the event loop, so concurrent calls never queue behind each other in
        a thread pool. On POSIX the child leads its own process group; when
        ``config.timeout_s`` elapses the whole group is killed and the call
        reports ``EXEC_FAILED``.

        Args:
            command: The command to execute.
            config: Optional execution configuration.
            error_handler: Receives spawn and wait failures.
            process_handler: Notified right after the process is created.
            stream_handler: Receives stdout lines; no stdout text is buffered.

        Returns:
            ExecResult with the exit code and captured text.

        Raises:
            ExecutionConfigError: If the command is empty, or a custom redirect
                is combined with a stream handler.
        """

        config = config or ExecConfig()
        self._validate_command(command)
        if config.redirect is RedirectMode.CUSTOM and stream_handler is not None:
            error = ExecutionConfigError(
                "Cannot use a custom redirect and a stream handler simultaneously."
            )
            self._logger.error("Rejected execution request: %s", error)
            raise error

        cmd = format_command(command)
        self._logger.debug("Executing command: %s", cmd)
        out_lines: list[str] = []
        err_lines: list[str] = []
        drains: list[asyncio.Task[None]] = []
        process: Process | None = None
        start = time.monotonic()
        try:
            process = await self._spawn_waiting(command, config)
            if process_handler is not None:
                process_handler.on_process_created(process)

            if config.redirect is RedirectMode.DEFAULT:
                on_line = (
                    stream_handler.on_output_line
                    if stream_handler is not None
                    else out_lines.append
                )
                drains.append(asyncio.create_task(self._drain(process.stdout, on_line, "stdout")))
                drains.append(
                    asyncio.create_task(self._drain(process.stderr, err_lines.append, "stderr"))
                )

            try:
                exit_code = await asyncio.wait_for(process.wait(), config.timeout_s)
            except TimeoutError as exc:
                raise subprocess.TimeoutExpired(command, config.timeout_s) from exc
            remaining_s = start + config.timeout_s - time.monotonic()
            await self._join_drains(process, drains, remaining_s)
        except Exception as exc:
            self._logger.error("Command failed: %s", cmd, exc_info=True)
            error_handler.handle_error(process, exc)
            if process is not None:
                await self._terminate(process, drains)
            result = ExecResult(
                exit_code=EXEC_FAILED,
                out_msg=_join_lines(out_lines),
                error_msg=str(exc),
                cmd=cmd,
                duration_s=time.monotonic() - start,
            )
            self._record(
                "execute",
                result,
                timed_out=isinstance(exc, subprocess.TimeoutExpired),
            )
            return result

        result = ExecResult(
            exit_code=_normalize_exit_code(exit_code),
            out_msg=_join_lines(out_lines),
            error_msg=_join_lines(err_lines),
            cmd=cmd,
            duration_s=time.monotonic() - start,
        )
        self._logger.info(
            "Command finished with exit code %s in %.2fs: %s",
            result.exit_code,
            result.duration_s,
            cmd,
        )
        self._record("execute", result)
        return result

    def execute_sync(self, command: list[str], config: ExecConfig | None = None) -> int:
        """Run a command with its output redirected to files by the OS.

        Blocks the calling thread. ``config.redirect`` is ignored: stdout and
        stderr always go to ``config.output_file`` and ``config.error_file``,
        which default to the null device. On timeout the child's process
        group is killed.

        Args:
            command: The command to execute.
            config: Optional execution configuration.

        Returns:
            The exit code, ``SPAWN_FAILED`` if the process could not be started,
            or ``TIMED_OUT`` if it did not exit within ``config.timeout_s``.
        """

        config = config or ExecConfig()
        self._validate_command(command)
        cmd = format_command(command)
        self._logger.info("execute_sync %s", cmd)
        start = time.monotonic()

        try:
            with ExitStack() as stack:
                process = subprocess.Popen(
                    command,
                    cwd=config.working_dir,
                    env=_merge_env(config.env),
                    stdin=subprocess.DEVNULL,
                    stdout=stack.enter_context(config.output_file.open("wb")),
                    stderr=stack.enter_context(config.error_file.open("wb")),
                    start_new_session=_NEW_SESSION,
                )
        except (OSError, ValueError, subprocess.SubprocessError):
            self._logger.error("Could not start command: %s", cmd, exc_info=True)
            self._observability.execution_finished(
                ExecutionRecord("execute_sync", cmd, SPAWN_FAILED, time.monotonic() - start)
            )
            return SPAWN_FAILED

        timed_out = False
        try:
            exit_code = _normalize_exit_code(process.wait(timeout=config.timeout_s))
        except subprocess.TimeoutExpired:
            self._logger.error("Command timed out after %ss: %s", config.timeout_s, cmd)
            _kill_group(process.pid, process.kill)
            process.wait()
            exit_code = TIMED_OUT
            timed_out = True

        self._observability.execution_finished(
            ExecutionRecord(
                "execute_sync",
                cmd,
                exit_code,
                time.monotonic() - start,
                timed_out=timed_out,
            )
        )
        return exit_code

    def spawn(
        self,
        command: list[str],
        working_dir: Path = Path("."),
        env: dict[str, str] | None = None,
    ) -> subprocess.Popen[str]:
        """Start a command and return the live process without waiting.

        All three standard streams are pipes owned by the caller, who is also
        responsible for waiting on or killing the process.

        Raises:
            ExecutionConfigError: If the command is empty.
            OSError: If the process cannot be started.
        """

        self._validate_command(command)
        self._logger.info("Spawning command: %s", format_command(command))
        return subprocess.Popen(
            command,
            cwd=working_dir,
            env=_merge_env(env),
            stdin=subprocess.PIPE,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            encoding="utf-8",
            errors="replace",
        )

    def _validate_command(self, command: list[str]) -> None:
        if not command:
            raise ExecutionConfigError("Command must contain at least one argument.")

    async def _spawn_waiting(self, command: list[str], config: ExecConfig) -> Process:
        with ExitStack() as stack:
            stdout: Any
            stderr: Any
            if config.redirect is RedirectMode.OMIT:
                stdout = stderr = asyncio.subprocess.DEVNULL
            elif config.redirect is RedirectMode.CUSTOM:
                # The child keeps its own descriptors once started.
                stdout = stack.enter_context(config.output_file.open("wb"))
                stderr = stack.enter_context(config.error_file.open("wb"))
            else:
                stdout = stderr = asyncio.subprocess.PIPE
            return await asyncio.create_subprocess_exec(
                *command,
                cwd=config.working_dir,
                env=_merge_env(config.env),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=stdout,
                stderr=stderr,
                limit=_LINE_LIMIT,
                start_new_session=_NEW_SESSION,
            )

    async def _drain(
        self,
        stream: asyncio.StreamReader | None,
        on_line: Callable[[str], None],
        name: str,
    ) -> None:
        if stream is None:
            return
        while True:
            try:
                raw = await stream.readline()
            except (OSError, ValueError):
                self._logger.warning(
                    "Reading %s failed; keeping the output read so far.",
                    name,
                    exc_info=True,
                )
                return
            if not raw:
                return
            on_line(_decode_line(raw))

    async def _join_drains(
        self,
        process: Process,
        drains: list[asyncio.Task[None]],
        remaining_s: float,
    ) -> None:
        """Wait for the drains of a child that has already exited.

        A background descendant may still hold the pipes open. Once the rest
        of the timeout (at least the grace period) is spent, the process
        group is killed and whatever was read is kept.
        """

        if not drains:
            return
        done, pending = await asyncio.wait(drains, timeout=max(remaining_s, _DRAIN_GRACE_S))
        for task in done:
            task.result()
        if not pending:
            return
        self._logger.warning(
            "Output of process %s still open after it exited; killing its process group.",
            process.pid,
        )
        _kill_group(process.pid, None)
        await self._settle(list(pending))

    async def _terminate(self, process: Process, drains: list[asyncio.Task[None]]) -> None:
        if process.returncode is None:
            self._logger.warning("Killing process group of %s", process.pid)
            _kill_group(process.pid, process.kill)
            await process.wait()
        else:
            _kill_group(process.pid, None)
        await self._settle(drains)

    async def _settle(self, drains: list[asyncio.Task[None]]) -> None:
        if not drains:
            return
        done, pending = await asyncio.wait(drains, timeout=_DRAIN_GRACE_S)
        for task in done:
            if not task.cancelled():
                task.exception()
        if pending:
            self._logger.warning(
                "Dropping %s stream(s) still open after %ss.", len(pending), _DRAIN_GRACE_S
            )
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)

    def _record(self, entry_point: str, result: ExecResult, *, timed_out: bool = False) -> None:
        self._observability.execution_finished(
            ExecutionRecord(
                entry_point,
                result.cmd,
                result.exit_code,
                result.duration_s,
                timed_out=timed_out,
            )
        )


def _kill_group(pid: int, fallback: Callable[[], None] | None) -> None:
    """Kill the process group led by ``pid``; call ``fallback`` where that is impossible."""

    if _NEW_SESSION:
        try:
            os.killpg(pid, signal.SIGKILL)
            return
        except (ProcessLookupError, PermissionError):
            pass
    if fallback is not None:
        try:
            fallback()
        except ProcessLookupError:
            pass


def _normalize_exit_code(exit_code: int) -> int:
    # Death by signal N is reported as 128 + N; negatives stay reserved for sentinels.
    return 128 - exit_code if exit_code < 0 else exit_code


def _decode_line(raw: bytes) -> str:
    return raw.decode("utf-8", errors="replace").removesuffix("\n").removesuffix("\r")


def _merge_env(env: dict[str, str] | None) -> dict[str, str] | None:
    if not env:
        return None
    return {**os.environ, **env}


def _join_lines(lines: list[str]) -> str:
    return os.linesep.join(lines)
