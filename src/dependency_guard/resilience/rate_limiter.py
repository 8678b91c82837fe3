"""
Rate limiter using a sliding window.

Counts only calls recorded within the trailing window. ``admit`` checks
without recording and ``record_request`` records a dispatched call;
``acquire`` does both atomically.
"""

from __future__ import annotations

import time
from collections import deque
from typing import TYPE_CHECKING

from dependency_guard.config import PolicyConfig, PolicyRegistry
from dependency_guard.errors import ConfigurationError, RateLimitExceededError
from dependency_guard.resilience._keyed import KeyedStateMap
from dependency_guard.resilience.admission import Admission
from dependency_guard.resilience.signals import RateWindowSnapshot

if TYPE_CHECKING:
    from collections.abc import Callable

    from dependency_guard.config import RateLimitConfig


def _prune(timestamps: deque[float], now: float, window: float) -> None:
    """Drop timestamps that have left the trailing window."""
    while timestamps and now - timestamps[0] >= window:
        timestamps.popleft()


class RateLimiter:
    """Per-dependency sliding-window rate limiter.

    Example:
        >>> limiter = RateLimiter(PolicyConfig(rate_limit={"capacity": 3, "window": 1.0}))
        >>> if limiter.admit("datastore").allowed:
        ...     limiter.record_request("datastore")
        ...     await call()
    """

    def __init__(
        self,
        policies: PolicyRegistry | PolicyConfig | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialize rate limiter.

        Args:
            policies: Policy registry, or one policy for every dependency
            clock: Monotonic clock in seconds

        Raises:
            ConfigurationError: If any configured window is not positive
        """
        if isinstance(policies, PolicyConfig):
            policies = PolicyRegistry(default=policies)
        self._policies = policies if policies is not None else PolicyRegistry()
        self._clock = clock

        _check_limits("default", self._policies.default.rate_limit)
        for name in self._policies:
            _check_limits(name, self._policies.get(name).rate_limit)

        self._windows: KeyedStateMap[deque[float]] = KeyedStateMap(
            lambda _: deque()
        )

    def admit(self, dependency: str) -> Admission:
        """Check whether a call fits in the dependency's window.

        Prunes expired timestamps, then allows iff fewer than ``capacity``
        remain. Does not record the call.

        Args:
            dependency: Dependency name

        Returns:
            Admission; rejected admissions carry a RateLimitExceededError
        """
        limits = self._policies.get(dependency).rate_limit

        with self._windows.locked(dependency) as timestamps:
            now = self._clock()
            _prune(timestamps, now, limits.window)
            if len(timestamps) < limits.capacity:
                return Admission.allow()
            retry_after = (
                limits.window - (now - timestamps[0]) if timestamps else None
            )

        return Admission.reject(
            RateLimitExceededError(
                dependency,
                capacity=limits.capacity,
                window=limits.window,
                retry_after=retry_after,
            )
        )

    def record_request(self, dependency: str) -> None:
        """Record a dispatched call against the dependency's window.

        Args:
            dependency: Dependency name
        """
        limits = self._policies.get(dependency).rate_limit

        with self._windows.locked(dependency) as timestamps:
            now = self._clock()
            _prune(timestamps, now, limits.window)
            timestamps.append(now)
            # Bounded at capacity even when admits race ahead of records
            while len(timestamps) > limits.capacity:
                timestamps.popleft()

    def acquire(self, dependency: str) -> Admission:
        """Admit and record in one atomic step.

        Concurrent callers cannot both take the last slot of a window.

        Args:
            dependency: Dependency name

        Returns:
            Admission; rejected admissions carry a RateLimitExceededError
        """
        limits = self._policies.get(dependency).rate_limit

        with self._windows.locked(dependency) as timestamps:
            now = self._clock()
            _prune(timestamps, now, limits.window)
            if len(timestamps) < limits.capacity:
                timestamps.append(now)
                return Admission.allow()
            retry_after = (
                limits.window - (now - timestamps[0]) if timestamps else None
            )

        return Admission.reject(
            RateLimitExceededError(
                dependency,
                capacity=limits.capacity,
                window=limits.window,
                retry_after=retry_after,
            )
        )

    def usage(self, dependency: str) -> tuple[int, int]:
        """Get ``(used, capacity)`` for a dependency."""
        snapshot = self.snapshot(dependency)
        return snapshot.used, snapshot.capacity

    def snapshot(self, dependency: str) -> RateWindowSnapshot:
        """Get a read-only snapshot of a dependency's window."""
        limits = self._policies.get(dependency).rate_limit

        with self._windows.locked(dependency) as timestamps:
            _prune(timestamps, self._clock(), limits.window)
            used = len(timestamps)

        return RateWindowSnapshot(
            used=used, capacity=limits.capacity, window=limits.window
        )

    def dependencies(self) -> list[str]:
        """Get dependencies referenced so far."""
        return self._windows.keys()


def _check_limits(name: str, limits: RateLimitConfig) -> None:
    if limits.window <= 0:
        raise ConfigurationError(
            f"rate window for {name} must be positive",
            option="rate_limit.window",
            value=limits.window,
        )
    if limits.capacity < 0:
        raise ConfigurationError(
            f"rate capacity for {name} must not be negative",
            option="rate_limit.capacity",
            value=limits.capacity,
        )
