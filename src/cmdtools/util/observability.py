"""Structured execution events and in-process metrics."""

from __future__ import annotations

import json
import time
from dataclasses import asdict, dataclass, field
from typing import Any

from cmdtools.util.logging import get_logger, normalize_level


@dataclass(frozen=True)
class ExecutionRecord:
    """Outcome of one call to a waiting entry point.

    Attributes:
        entry_point: Name of the executor method that ran the command.
        cmd: The command line joined with single spaces.
        exit_code: Exit code or negative failure sentinel.
        duration_s: Wall-clock duration of the call in seconds.
        timed_out: Whether the process had to be killed after its timeout.
    """

    entry_point: str
    cmd: str
    exit_code: int
    duration_s: float
    timed_out: bool = False

    @property
    def failed(self) -> bool:
        return self.exit_code < 0


@dataclass(frozen=True)
class LogEvent:
    """Structured log event payload.

    Attributes:
        event_type: Machine-readable event name.
        timestamp: Unix timestamp in seconds.
        payload: Structured data associated with the event.
        context: Optional shared context fields.
    """

    event_type: str
    timestamp: float
    payload: dict[str, Any]
    context: dict[str, Any] = field(default_factory=dict)


class EventLogger:
    """Logger that emits one JSON document per event."""

    def __init__(self, logger_name: str, context: dict[str, Any] | None = None) -> None:
        """Initialize the event logger.

        Args:
            logger_name: Logger name used for output.
            context: Optional fields attached to every event, e.g. a host name.
        """

        self._logger = get_logger(logger_name)
        self._context = context or {}

    def log(
        self,
        event_type: str,
        payload: dict[str, Any],
        *,
        level: str = "INFO",
        context: dict[str, Any] | None = None,
    ) -> None:
        """Emit a structured log event.

        Args:
            event_type: Machine-readable event name.
            payload: Structured event data.
            level: Logging level string (default: INFO).
            context: Optional context overrides for this event.
        """

        event = LogEvent(
            event_type=event_type,
            timestamp=time.time(),
            payload=payload,
            context={**self._context, **(context or {})},
        )
        message = json.dumps(asdict(event), sort_keys=True, default=str)
        self._logger.log(normalize_level(level), message)


@dataclass
class MetricsCollector:
    """Counts executions per outcome and keeps their durations."""

    counters: dict[str, int] = field(default_factory=dict)
    durations: dict[str, list[float]] = field(default_factory=dict)

    def increment(self, name: str, value: int = 1) -> None:
        """Increment a named counter.

        Args:
            name: Counter name.
            value: Increment amount.
        """

        self.counters[name] = self.counters.get(name, 0) + value

    def record_duration(self, name: str, duration_s: float) -> None:
        """Append a duration sample to a named metric."""

        self.durations.setdefault(name, []).append(duration_s)

    def record_execution(self, record: ExecutionRecord) -> None:
        """Update the executor counters from a finished call."""

        self.increment("executor.executions")
        self.increment(f"executor.{record.entry_point}.executions")
        self.record_duration("executor.duration", record.duration_s)
        if record.failed:
            self.increment("executor.failures")
        if record.timed_out:
            self.increment("executor.timeouts")

    def snapshot(self) -> dict[str, Any]:
        """Return a copy of the counters and a count/total/average summary per duration."""

        duration_summary: dict[str, dict[str, float]] = {}
        for name, values in self.durations.items():
            total = sum(values)
            count = len(values)
            avg = total / count if count else 0.0
            duration_summary[name] = {"count": float(count), "total_s": total, "avg_s": avg}
        return {
            "counters": dict(self.counters),
            "durations": duration_summary,
        }


@dataclass(frozen=True)
class ObservabilityManager:
    """Routes finished executions to the event log and the metrics."""

    events: EventLogger
    metrics: MetricsCollector

    def execution_finished(self, record: ExecutionRecord) -> None:
        """Record a finished call and emit an ``executor.finished`` event.

        Failed calls are logged at WARNING, all others at INFO.
        """

        self.metrics.record_execution(record)
        self.events.log(
            "executor.finished",
            asdict(record),
            level="WARNING" if record.failed else "INFO",
        )


def create_observability_manager() -> ObservabilityManager:
    """Create an observability manager logging to ``cmdtools.events``."""

    return ObservabilityManager(
        events=EventLogger("cmdtools.events"),
        metrics=MetricsCollector(),
    )
