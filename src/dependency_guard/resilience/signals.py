"""
Resilience signals and snapshots.

Read-only views of per-dependency state for dashboards and health checks.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class HealthStatus(str, Enum):
    """Overall health levels."""

    HEALTHY = "healthy"
    DEGRADED = "degraded"


@dataclass(frozen=True)
class CircuitBreakerSnapshot:
    """Snapshot of one dependency's circuit.

    Attributes:
        phase: Current phase (closed, open, half_open)
        consecutive_failures: Current failure streak
        failure_threshold: Threshold for opening
        consecutive_successes: Probe successes while half-open
        last_failure_at: Clock reading of the last failure
        retry_after: Seconds until an open circuit admits a probe
        rejected: Calls rejected while open
        state_changes: Number of phase changes
    """

    phase: str
    consecutive_failures: int
    failure_threshold: int
    consecutive_successes: int = 0
    last_failure_at: float | None = None
    retry_after: float | None = None
    rejected: int = 0
    state_changes: int = 0

    @property
    def is_open(self) -> bool:
        """Check if circuit is open."""
        return self.phase == "open"

    @property
    def is_closed(self) -> bool:
        """Check if circuit is closed."""
        return self.phase == "closed"

    @property
    def is_half_open(self) -> bool:
        """Check if circuit is half-open."""
        return self.phase == "half_open"

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "phase": self.phase,
            "consecutive_failures": self.consecutive_failures,
            "failure_threshold": self.failure_threshold,
            "consecutive_successes": self.consecutive_successes,
            "last_failure_at": self.last_failure_at,
            "retry_after": self.retry_after,
            "rejected": self.rejected,
            "state_changes": self.state_changes,
        }


@dataclass(frozen=True)
class RateWindowSnapshot:
    """Snapshot of one dependency's sliding window.

    Attributes:
        used: Calls recorded within the trailing window
        capacity: Calls allowed per window
        window: Window length in seconds
    """

    used: int
    capacity: int
    window: float

    @property
    def utilization(self) -> float:
        """Get utilization ratio (0.0 to 1.0)."""
        if self.capacity == 0:
            return 1.0
        return min(1.0, self.used / self.capacity)

    @property
    def is_throttled(self) -> bool:
        """Check whether the next call would be rejected."""
        return self.used >= self.capacity

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "used": self.used,
            "capacity": self.capacity,
            "window": self.window,
            "utilization": self.utilization,
            "is_throttled": self.is_throttled,
        }


@dataclass(frozen=True)
class DependencyHealth:
    """Health of one dependency as shown on dashboards.

    Attributes:
        dependency: Dependency name
        phase: Circuit phase
        consecutive_failures: Current failure streak
        rate_used: Calls within the current window
        rate_capacity: Calls allowed per window
    """

    dependency: str
    phase: str
    consecutive_failures: int
    rate_used: int
    rate_capacity: int

    @property
    def rate_usage(self) -> str:
        """Window usage as ``used/capacity``."""
        return f"{self.rate_used}/{self.rate_capacity}"

    @property
    def status(self) -> HealthStatus:
        """Healthy only while the circuit is closed."""
        return HealthStatus.HEALTHY if self.phase == "closed" else HealthStatus.DEGRADED

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "phase": self.phase,
            "consecutive_failures": self.consecutive_failures,
            "rate_usage": self.rate_usage,
            "status": self.status.value,
        }


@dataclass(frozen=True)
class HealthReport:
    """Aggregated health of every known dependency.

    Attributes:
        status: Overall status (degraded if any circuit is not closed)
        dependencies: Health per dependency
        timestamp: Report time (epoch seconds)
    """

    status: HealthStatus
    dependencies: dict[str, DependencyHealth] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)

    @classmethod
    def from_snapshot(cls, snapshot: dict[str, DependencyHealth]) -> HealthReport:
        """Aggregate a health snapshot."""
        degraded = any(h.status == HealthStatus.DEGRADED for h in snapshot.values())
        return cls(
            status=HealthStatus.DEGRADED if degraded else HealthStatus.HEALTHY,
            dependencies=dict(snapshot),
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "status": self.status.value,
            "timestamp": self.timestamp,
            "dependencies": {
                name: health.to_dict() for name, health in self.dependencies.items()
            },
        }
