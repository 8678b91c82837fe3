"""
Admission decisions returned by the circuit breaker and rate limiter.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from dependency_guard.errors import GuardError


class CircuitPhase(str, Enum):
    """Circuit breaker phases."""

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass(frozen=True)
class CircuitTransition:
    """A phase change of one dependency's circuit.

    Attributes:
        dependency: Dependency name
        from_phase: Phase before the change
        to_phase: Phase after the change
        at: Clock reading when the change happened
    """

    dependency: str
    from_phase: CircuitPhase
    to_phase: CircuitPhase
    at: float


@dataclass(frozen=True)
class Admission:
    """Outcome of an admission check.

    Attributes:
        allowed: Whether the call may proceed
        error: Rejection error when not allowed
        transition: Circuit transition performed by this check, if any
    """

    allowed: bool
    error: GuardError | None = None
    transition: CircuitTransition | None = None

    @classmethod
    def allow(cls, transition: CircuitTransition | None = None) -> Admission:
        """Create an allowing decision."""
        return cls(allowed=True, transition=transition)

    @classmethod
    def reject(cls, error: GuardError) -> Admission:
        """Create a rejecting decision."""
        return cls(allowed=False, error=error)

    def __bool__(self) -> bool:
        return self.allowed
