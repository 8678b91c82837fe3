"""
Resilience layer - Circuit breaking, rate limiting, and retry.

This module provides the per-dependency protection patterns:
- CircuitBreaker: Closed/Open/Half-Open state machine per dependency
- RateLimiter: Sliding-window admission per dependency
- RetryOrchestrator: Capped exponential backoff with per-attempt timeouts
- ProtectedCallExecutor: Unified executor combining all patterns
- DependencyHealth / HealthReport: Read-only health views
"""

from dependency_guard.resilience.admission import (
    Admission,
    CircuitPhase,
    CircuitTransition,
)
from dependency_guard.resilience.circuit_breaker import CircuitBreaker, CircuitState
from dependency_guard.resilience.executor import CallStats, ProtectedCallExecutor
from dependency_guard.resilience.rate_limiter import RateLimiter
from dependency_guard.resilience.retry import (
    Attempt,
    AttemptOutcome,
    RetryOrchestrator,
    RetryResult,
    with_retry,
)
from dependency_guard.resilience.signals import (
    CircuitBreakerSnapshot,
    DependencyHealth,
    HealthReport,
    HealthStatus,
    RateWindowSnapshot,
)

__all__ = [
    # Admission
    "Admission",
    # Retry
    "Attempt",
    "AttemptOutcome",
    # Executor
    "CallStats",
    # Circuit breaker
    "CircuitBreaker",
    # Signals
    "CircuitBreakerSnapshot",
    "CircuitPhase",
    "CircuitState",
    "CircuitTransition",
    "DependencyHealth",
    "HealthReport",
    "HealthStatus",
    "ProtectedCallExecutor",
    # Rate limiter
    "RateLimiter",
    "RateWindowSnapshot",
    "RetryOrchestrator",
    "RetryResult",
    "with_retry",
]
