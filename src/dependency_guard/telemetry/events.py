"""
Telemetry events and sinks.

The executor emits one structured event per decision (rejection, outcome,
circuit transition). Transport belongs to the monitoring subsystem, which
plugs in by implementing ``TelemetrySink``.
"""

from __future__ import annotations

import threading
import time
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

from dependency_guard.telemetry.logger import GuardLogger, get_logger

if TYPE_CHECKING:
    from collections.abc import Iterable


class EventType(str, Enum):
    """Types of telemetry events."""

    CIRCUIT_REJECTED = "circuit_rejected"
    RATE_LIMITED = "rate_limited"
    CALL_SUCCEEDED = "call_succeeded"
    CALL_FAILED = "call_failed"
    CIRCUIT_OPENED = "circuit_opened"
    CIRCUIT_HALF_OPENED = "circuit_half_opened"
    CIRCUIT_CLOSED = "circuit_closed"


@dataclass(frozen=True)
class TelemetryEvent:
    """A structured event emitted by the executor.

    Attributes:
        type: Event type
        dependency: Dependency name
        operation_name: Caller-supplied operation name
        timestamp: Wall-clock time of the event (epoch seconds)
        fields: Event-specific fields (attempts, latency_ms, error_kind, ...)
    """

    type: EventType
    dependency: str
    operation_name: str
    timestamp: float = field(default_factory=time.time)
    fields: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "event": self.type.value,
            "dependency": self.dependency,
            "operation_name": self.operation_name,
            "timestamp": self.timestamp,
            **self.fields,
        }


@runtime_checkable
class TelemetrySink(Protocol):
    """Receiver of telemetry events."""

    def emit(self, event: TelemetryEvent) -> None:
        """Handle one event. Must not block."""
        ...


class NullSink:
    """Sink that discards every event."""

    def emit(self, event: TelemetryEvent) -> None:
        return None


class InMemorySink:
    """Thread-safe sink that keeps the most recent events.

    Example:
        >>> sink = InMemorySink()
        >>> executor = ProtectedCallExecutor(registry, sink=sink)
        >>> [e.type for e in sink.events]
    """

    def __init__(self, max_events: int = 10000) -> None:
        """Initialize sink.

        Args:
            max_events: Maximum number of events retained
        """
        self._lock = threading.Lock()
        self._events: deque[TelemetryEvent] = deque(maxlen=max_events)

    def emit(self, event: TelemetryEvent) -> None:
        with self._lock:
            self._events.append(event)

    @property
    def events(self) -> list[TelemetryEvent]:
        """Get a copy of retained events."""
        with self._lock:
            return list(self._events)

    def of_type(self, event_type: EventType) -> list[TelemetryEvent]:
        """Get retained events of one type."""
        return [e for e in self.events if e.type == event_type]

    def types(self) -> list[EventType]:
        """Get the types of retained events in emission order."""
        return [e.type for e in self.events]

    def clear(self) -> None:
        """Drop all retained events."""
        with self._lock:
            self._events.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._events)


# Events that indicate trouble are logged above INFO
_EVENT_LEVELS: dict[EventType, str] = {
    EventType.CIRCUIT_REJECTED: "info",
    EventType.RATE_LIMITED: "info",
    EventType.CALL_SUCCEEDED: "debug",
    EventType.CALL_FAILED: "error",
    EventType.CIRCUIT_OPENED: "warning",
    EventType.CIRCUIT_HALF_OPENED: "info",
    EventType.CIRCUIT_CLOSED: "info",
}


class LoggingSink:
    """Sink that writes events through the structured logger."""

    def __init__(self, logger: GuardLogger | None = None) -> None:
        self._logger = logger or get_logger("dependency_guard.events")

    def emit(self, event: TelemetryEvent) -> None:
        log = getattr(self._logger, _EVENT_LEVELS.get(event.type, "info"))
        log(event.type.value, **event.to_dict())


class CompositeSink:
    """Fan events out to several sinks.

    A failing sink does not prevent delivery to the others; the first
    error is re-raised after all sinks have been called.
    """

    def __init__(self, sinks: Iterable[TelemetrySink]) -> None:
        self._sinks = list(sinks)

    def emit(self, event: TelemetryEvent) -> None:
        first_error: Exception | None = None
        for sink in self._sinks:
            try:
                sink.emit(event)
            except Exception as e:
                if first_error is None:
                    first_error = e
        if first_error is not None:
            raise first_error

    def add(self, sink: TelemetrySink) -> None:
        """Add a sink."""
        self._sinks.append(sink)
