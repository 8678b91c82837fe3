"""dependency-guard: Resilient execution layer for external dependencies.

Wraps every call to a volatile dependency (document database, inference
API, function runtime, secret store) in a per-dependency policy: circuit
breaking, sliding-window rate limiting, and bounded retry with backoff.
"""

from __future__ import annotations

from dependency_guard.config import PolicyConfig, PolicyRegistry, RateLimitConfig, RetryConfig
from dependency_guard.errors import (
    CircuitOpenError,
    ConfigurationError,
    GuardError,
    MaxRetriesExceededError,
    OperationTimeoutError,
    RateLimitExceededError,
)
from dependency_guard.resilience import (
    CallStats,
    DependencyHealth,
    HealthReport,
    ProtectedCallExecutor,
)
from dependency_guard.telemetry import (
    EventType,
    InMemorySink,
    LoggingSink,
    MetricsSink,
    TelemetryEvent,
    TelemetrySink,
)

__version__ = "0.1.0"

__all__ = [
    # Executor
    "CallStats",
    # Errors
    "CircuitOpenError",
    "ConfigurationError",
    "DependencyHealth",
    # Telemetry
    "EventType",
    "GuardError",
    "HealthReport",
    "InMemorySink",
    "LoggingSink",
    "MaxRetriesExceededError",
    "MetricsSink",
    "OperationTimeoutError",
    # Config
    "PolicyConfig",
    "PolicyRegistry",
    "ProtectedCallExecutor",
    "RateLimitConfig",
    "RateLimitExceededError",
    "RetryConfig",
    "TelemetryEvent",
    "TelemetrySink",
    # Version
    "__version__",
]
