"""Execution engine base types and interfaces."""

from __future__ import annotations

import asyncio
import os
import subprocess
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from asyncio.subprocess import Process
from pathlib import Path
from typing import Final

NULL_DEVICE: Final[Path] = Path(os.devnull)

EXEC_FAILED: Final[int] = -1
SPAWN_FAILED: Final[int] = -100
TIMED_OUT: Final[int] = -200

DEFAULT_TIMEOUT_S: Final[float] = 10.0


class ExecutionConfigError(ValueError):
    """Raised when an execution request is invalid before any process is spawned."""


class RedirectMode(str, Enum):
    """How the standard streams of a child process are wired."""

    DEFAULT = "default"
    OMIT = "omit"
    CUSTOM = "custom"


@dataclass(frozen=True)
class ExecResult:
    """Result of a capturing execution.

    Attributes:
        exit_code: Exit code of the process, or a negative sentinel on failure.
        out_msg: Captured standard output, lines joined with ``os.linesep``.
        error_msg: Captured standard error, or the failure message.
        cmd: The command line joined with single spaces, for diagnostics only.
        duration_s: Wall-clock duration of the call in seconds.
    """

    exit_code: int
    out_msg: str
    error_msg: str
    cmd: str
    duration_s: float = 0.0

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


@dataclass(frozen=True)
class ExecConfig:
    """Configuration shared by the waiting entry points.

    Attributes:
        working_dir: Working directory of the child process.
        timeout_s: Seconds to wait for the process to exit.
        env: Environment overrides merged over the inherited environment.
        redirect: Stream wiring mode.
        output_file: Destination of stdout in ``CUSTOM`` mode and for ``execute_sync``.
        error_file: Destination of stderr in ``CUSTOM`` mode and for ``execute_sync``.
    """

    working_dir: Path = Path(".")
    timeout_s: float = DEFAULT_TIMEOUT_S
    env: dict[str, str] = field(default_factory=dict)
    redirect: RedirectMode = RedirectMode.DEFAULT
    output_file: Path = NULL_DEVICE
    error_file: Path = NULL_DEVICE


class ProcessErrorHandler(ABC):
    """Receives failures raised while creating or waiting for a process."""

    @abstractmethod
    def handle_error(self, process: Process | None, exc: Exception) -> None:
        """Handle an execution failure.

        Args:
            process: The child process, or None when spawning failed.
            exc: The exception that was raised.
        """


class NoopErrorHandler(ProcessErrorHandler):
    """Error handler that ignores every failure."""

    def handle_error(self, process: Process | None, exc: Exception) -> None:
        return None


NOOP_ERROR_HANDLER: Final[ProcessErrorHandler] = NoopErrorHandler()


class ProcessHandler(ABC):
    """Notified once, right after the child process is created."""

    @abstractmethod
    def on_process_created(self, process: Process) -> None:
        """Receive the freshly spawned process.

        Its ``pid`` names a new process group, so callers can stop the child
        and everything it started with ``os.killpg``.
        """


class ExecStreamHandler(ABC):
    """Receives the standard output of a process one line at a time."""

    @abstractmethod
    def on_output_line(self, line: str) -> None:
        """Handle a single stdout line without its trailing newline.

        Called on the event loop thread, in the order the child wrote the
        lines, before the next line is read. It must not block.
        """


class CommandExecutor(ABC):
    """Abstract base class for command execution engines."""

    @abstractmethod
    async def execute(
        self,
        command: list[str],
        config: ExecConfig | None = None,
        *,
        error_handler: ProcessErrorHandler = NOOP_ERROR_HANDLER,
        process_handler: ProcessHandler | None = None,
        stream_handler: ExecStreamHandler | None = None,
    ) -> ExecResult:
        """Run a command, draining its output concurrently, and capture the result.

        Args:
            command: The command to execute as an argv list.
            config: Optional execution configuration.
            error_handler: Receives spawn and wait failures.
            process_handler: Notified right after the process is created.
            stream_handler: Receives stdout lines instead of the in-memory buffer.

        Returns:
            ExecResult; failures are reported through negative exit codes.

        Raises:
            ExecutionConfigError: If the request is invalid.
        """

    @abstractmethod
    def execute_sync(self, command: list[str], config: ExecConfig | None = None) -> int:
        """Run a command with stdout and stderr redirected to files.

        Returns:
            The exit code, ``SPAWN_FAILED`` or ``TIMED_OUT``.
        """

    @abstractmethod
    def spawn(
        self,
        command: list[str],
        working_dir: Path = Path("."),
        env: dict[str, str] | None = None,
    ) -> subprocess.Popen[str]:
        """Start a command and hand the live process to the caller."""

    def run(
        self,
        command: list[str],
        config: ExecConfig | None = None,
        *,
        error_handler: ProcessErrorHandler = NOOP_ERROR_HANDLER,
        process_handler: ProcessHandler | None = None,
        stream_handler: ExecStreamHandler | None = None,
    ) -> ExecResult:
        """Run :meth:`execute` to completion from synchronous code."""

        return asyncio.run(
            self.execute(
                command,
                config,
                error_handler=error_handler,
                process_handler=process_handler,
                stream_handler=stream_handler,
            )
        )


def format_command(command: list[str]) -> str:
    """Join an argv list with single spaces for logging and results."""

    return " ".join(command)
