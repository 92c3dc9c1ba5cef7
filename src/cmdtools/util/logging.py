"""Logging setup for the cmdtools library and CLI."""

from __future__ import annotations

import logging
from typing import Final, TextIO

DEFAULT_LOG_FORMAT: Final[str] = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"
ROOT_LOGGER_NAME: Final[str] = "cmdtools"
_LEVELS: Final[dict[str, int]] = {
    "CRITICAL": logging.CRITICAL,
    "ERROR": logging.ERROR,
    "WARNING": logging.WARNING,
    "INFO": logging.INFO,
    "DEBUG": logging.DEBUG,
}


def configure_logging(
    level: str = "INFO",
    fmt: str | None = None,
    *,
    stream: TextIO | None = None,
    force: bool = False,
) -> None:
    """Configure logging for command-line use.

    The library itself never calls this; it only logs to ``cmdtools.*``
    loggers and leaves handler setup to the host program.

    Args:
        level: Logging level name (e.g., "INFO", "DEBUG"). Unknown names mean INFO.
        fmt: Optional logging format string. Defaults to a pipe-separated format.
        stream: Stream for the handler; stderr when omitted.
        force: Replace handlers installed by an earlier call.
    """

    logging.basicConfig(
        level=normalize_level(level),
        format=fmt or DEFAULT_LOG_FORMAT,
        stream=stream,
        force=force,
    )
    logging.getLogger(ROOT_LOGGER_NAME).setLevel(normalize_level(level))


def get_logger(name: str) -> logging.Logger:
    """Return a logger below ``cmdtools``, e.g. ``cmdtools.LocalExecutor``."""

    if name == ROOT_LOGGER_NAME or name.startswith(f"{ROOT_LOGGER_NAME}."):
        return logging.getLogger(name)
    return logging.getLogger(f"{ROOT_LOGGER_NAME}.{name}")


def normalize_level(level: str) -> int:
    return _LEVELS.get(level.strip().upper(), logging.INFO)
