"""
Telemetry module for dependency-guard.

Provides structured logging, telemetry events and sinks, and metrics
aggregation.
"""

from dependency_guard.telemetry.events import (
    CompositeSink,
    EventType,
    InMemorySink,
    LoggingSink,
    NullSink,
    TelemetryEvent,
    TelemetrySink,
)
from dependency_guard.telemetry.logger import (
    GuardLogger,
    LogContext,
    LogLevel,
    SensitiveDataMasker,
    clear_log_context,
    get_log_context,
    get_logger,
    log_context,
    reset_log_context,
    set_log_context,
)
from dependency_guard.telemetry.metrics import (
    DependencyMetrics,
    HistogramBuckets,
    MetricsSink,
)

__all__ = [
    # Events
    "CompositeSink",
    # Metrics
    "DependencyMetrics",
    "EventType",
    # Logger
    "GuardLogger",
    "HistogramBuckets",
    "InMemorySink",
    "LogContext",
    "LogLevel",
    "LoggingSink",
    "MetricsSink",
    "NullSink",
    "SensitiveDataMasker",
    "TelemetryEvent",
    "TelemetrySink",
    "clear_log_context",
    "get_log_context",
    "get_logger",
    "log_context",
    "reset_log_context",
    "set_log_context",
]
