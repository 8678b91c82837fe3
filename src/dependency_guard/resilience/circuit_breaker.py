"""
Circuit breaker for fault isolation.

Implements the circuit breaker pattern per dependency, with three phases:
- Closed: Normal operation, calls pass through
- Open: Circuit tripped, calls fail fast
- Half-Open: Probing whether the dependency recovered

There is no background timer: an open circuit moves to half-open lazily,
on the first admission check after ``open_timeout`` has elapsed.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import TYPE_CHECKING

from dependency_guard.config import PolicyConfig, PolicyRegistry
from dependency_guard.errors import CircuitOpenError
from dependency_guard.resilience._keyed import KeyedStateMap
from dependency_guard.resilience.admission import (
    Admission,
    CircuitPhase,
    CircuitTransition,
)
from dependency_guard.resilience.signals import CircuitBreakerSnapshot
from dependency_guard.telemetry import get_logger

if TYPE_CHECKING:
    from collections.abc import Callable

logger = get_logger("dependency_guard.circuit_breaker")


@dataclass
class CircuitState:
    """Mutable circuit state of one dependency.

    Only touched while holding the dependency's lock.
    """

    phase: CircuitPhase = CircuitPhase.CLOSED
    consecutive_failures: int = 0
    consecutive_successes: int = 0
    last_failure_at: float | None = None
    rejected: int = 0
    state_changes: int = 0


class CircuitBreaker:
    """Per-dependency circuit breaker.

    Prevents cascading failures by failing fast while a dependency is
    unhealthy. Each dependency has independent state behind its own lock;
    every method is non-blocking and O(1).

    Example:
        >>> breaker = CircuitBreaker(PolicyConfig(failure_threshold=3))
        >>> admission = breaker.admit("inference")
        >>> if admission.allowed:
        ...     try:
        ...         await call()
        ...     except Exception:
        ...         breaker.record_failure("inference")
        ...     else:
        ...         breaker.record_success("inference")
    """

    def __init__(
        self,
        policies: PolicyRegistry | PolicyConfig | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialize circuit breaker.

        Args:
            policies: Policy registry, or one policy for every dependency
            clock: Monotonic clock in seconds
        """
        if isinstance(policies, PolicyConfig):
            policies = PolicyRegistry(default=policies)
        self._policies = policies if policies is not None else PolicyRegistry()
        self._clock = clock
        self._states: KeyedStateMap[CircuitState] = KeyedStateMap(
            lambda _: CircuitState()
        )

    def _transition(
        self,
        dependency: str,
        state: CircuitState,
        new_phase: CircuitPhase,
        now: float,
    ) -> CircuitTransition:
        """Move a circuit to a new phase. Caller holds the lock."""
        transition = CircuitTransition(
            dependency=dependency,
            from_phase=state.phase,
            to_phase=new_phase,
            at=now,
        )
        state.phase = new_phase
        state.state_changes += 1

        if new_phase == CircuitPhase.OPEN:
            state.last_failure_at = now
            state.consecutive_successes = 0
        elif new_phase == CircuitPhase.HALF_OPEN:
            state.consecutive_failures = 0
            state.consecutive_successes = 0
        elif new_phase == CircuitPhase.CLOSED:
            state.consecutive_failures = 0
            state.consecutive_successes = 0

        return transition

    def admit(self, dependency: str) -> Admission:
        """Decide whether a call to a dependency may be dispatched.

        An open circuit whose timeout has elapsed is moved to half-open
        under the dependency's lock, so exactly one concurrent caller
        performs (and is told about) the transition.

        Args:
            dependency: Dependency name

        Returns:
            Admission; rejected admissions carry a CircuitOpenError
        """
        policy = self._policies.get(dependency)
        transition: CircuitTransition | None = None

        with self._states.locked(dependency) as state:
            if state.phase == CircuitPhase.OPEN:
                now = self._clock()
                elapsed = now - (state.last_failure_at or 0.0)
                if elapsed < policy.open_timeout:
                    state.rejected += 1
                    return Admission.reject(
                        CircuitOpenError(
                            dependency, retry_after=policy.open_timeout - elapsed
                        )
                    )
                transition = self._transition(
                    dependency, state, CircuitPhase.HALF_OPEN, now
                )

        if transition is not None:
            logger.info(
                "Circuit half-open, probing dependency",
                dependency=dependency,
            )
        return Admission.allow(transition)

    def record_success(self, dependency: str) -> CircuitTransition | None:
        """Record a successful call.

        Args:
            dependency: Dependency name

        Returns:
            The transition to closed, if this success closed the circuit
        """
        policy = self._policies.get(dependency)
        transition: CircuitTransition | None = None

        with self._states.locked(dependency) as state:
            if state.phase == CircuitPhase.CLOSED:
                state.consecutive_failures = 0
            elif state.phase == CircuitPhase.HALF_OPEN:
                state.consecutive_successes += 1
                if state.consecutive_successes >= policy.half_open_success_threshold:
                    transition = self._transition(
                        dependency, state, CircuitPhase.CLOSED, self._clock()
                    )

        if transition is not None:
            logger.info("Circuit closed, dependency recovered", dependency=dependency)
        return transition

    def record_failure(self, dependency: str) -> CircuitTransition | None:
        """Record a failed call.

        Outcomes that arrive while the circuit is open belong to calls
        admitted before it tripped and are ignored.

        Args:
            dependency: Dependency name

        Returns:
            The transition to open, if this failure opened the circuit
        """
        policy = self._policies.get(dependency)
        transition: CircuitTransition | None = None

        with self._states.locked(dependency) as state:
            now = self._clock()
            if state.phase == CircuitPhase.CLOSED:
                state.consecutive_failures += 1
                state.last_failure_at = now
                if state.consecutive_failures >= policy.failure_threshold:
                    transition = self._transition(
                        dependency, state, CircuitPhase.OPEN, now
                    )
            elif state.phase == CircuitPhase.HALF_OPEN:
                transition = self._transition(dependency, state, CircuitPhase.OPEN, now)
            failures = state.consecutive_failures

        if transition is not None:
            logger.warning(
                "Circuit opened",
                dependency=dependency,
                from_phase=transition.from_phase.value,
                consecutive_failures=failures,
                open_timeout=policy.open_timeout,
            )
        return transition

    def phase(self, dependency: str) -> CircuitPhase:
        """Get the current phase of a dependency's circuit.

        Does not perform the lazy open-to-half-open transition.
        """
        with self._states.locked(dependency) as state:
            return state.phase

    def snapshot(self, dependency: str) -> CircuitBreakerSnapshot:
        """Get a read-only snapshot of a dependency's circuit.

        Args:
            dependency: Dependency name

        Returns:
            CircuitBreakerSnapshot
        """
        policy = self._policies.get(dependency)
        with self._states.locked(dependency) as state:
            retry_after = None
            if state.phase == CircuitPhase.OPEN and state.last_failure_at is not None:
                elapsed = self._clock() - state.last_failure_at
                retry_after = max(0.0, policy.open_timeout - elapsed)
            return CircuitBreakerSnapshot(
                phase=state.phase.value,
                consecutive_failures=state.consecutive_failures,
                failure_threshold=policy.failure_threshold,
                consecutive_successes=state.consecutive_successes,
                last_failure_at=state.last_failure_at,
                retry_after=retry_after,
                rejected=state.rejected,
                state_changes=state.state_changes,
            )

    def dependencies(self) -> list[str]:
        """Get dependencies referenced so far."""
        return self._states.keys()

    def __repr__(self) -> str:
        return f"CircuitBreaker(dependencies={self.dependencies()})"
