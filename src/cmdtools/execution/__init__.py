"""Execution engine package."""

from cmdtools.execution.base import (
    EXEC_FAILED,
    NULL_DEVICE,
    SPAWN_FAILED,
    TIMED_OUT,
    CommandExecutor,
    ExecConfig,
    ExecResult,
    ExecStreamHandler,
    ExecutionConfigError,
    NoopErrorHandler,
    ProcessErrorHandler,
    ProcessHandler,
    RedirectMode,
)
from cmdtools.execution.local_exec import LocalExecutor

__all__ = [
    "EXEC_FAILED",
    "NULL_DEVICE",
    "SPAWN_FAILED",
    "TIMED_OUT",
    "CommandExecutor",
    "ExecConfig",
    "ExecResult",
    "ExecStreamHandler",
    "ExecutionConfigError",
    "LocalExecutor",
    "NoopErrorHandler",
    "ProcessErrorHandler",
    "ProcessHandler",
    "RedirectMode",
]
