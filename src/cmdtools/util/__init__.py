"""Utility helpers package."""

from cmdtools.util.logging import configure_logging, get_logger
from cmdtools.util.observability import (
    EventLogger,
    ExecutionRecord,
    MetricsCollector,
    ObservabilityManager,
    create_observability_manager,
)

__all__ = [
    "EventLogger",
    "ExecutionRecord",
    "MetricsCollector",
    "ObservabilityManager",
    "configure_logging",
    "create_observability_manager",
    "get_logger",
]
