"""
Base error classes for dependency-guard.

Provides a layered error hierarchy:
- GuardError: Base class for all library errors
- ConfigurationError: Invalid policy configuration
- CircuitOpenError: Dependency isolated by its circuit breaker
- RateLimitExceededError: Admission denied by the sliding window
- OperationTimeoutError: A single attempt exceeded its deadline
- MaxRetriesExceededError: Retry budget exhausted, wraps the last error
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, ClassVar


@dataclass
class ErrorContext:
    """Structured error context for diagnostics."""

    dependency: str | None = None
    """Dependency name the error relates to (e.g., 'inference')"""

    details: dict[str, Any] = field(default_factory=dict)
    """Additional details about the error"""

    source: str | None = None
    """Error source (e.g., 'circuit_breaker', 'rate_limiter', 'retry')"""

    hint: str | None = None
    """Actionable hint for resolving the error"""

    def __str__(self) -> str:
        parts = []
        if self.source:
            parts.append(f"[{self.source}]")
        if self.dependency:
            parts.append(f"dependency='{self.dependency}'")
        if self.hint:
            parts.append(f"(hint: {self.hint})")
        return " ".join(parts)


class GuardError(Exception):
    """Base class for all dependency-guard errors.

    Attributes:
        message: Human-readable error message
        context: Structured error context
        http_status: Status an upstream API layer should answer with
    """

    http_status: ClassVar[int] = 500

    def __init__(
        self,
        message: str,
        context: ErrorContext | None = None,
    ) -> None:
        self.message = message
        self.context = context or ErrorContext()
        super().__init__(self._format_message())

    def _format_message(self) -> str:
        ctx_str = str(self.context)
        if ctx_str:
            return f"{self.message} {ctx_str}"
        return self.message

    @property
    def dependency(self) -> str | None:
        """Dependency name, if known."""
        return self.context.dependency

    def with_hint(self, hint: str) -> GuardError:
        """Add a hint to this error."""
        self.context.hint = hint
        return self


class ConfigurationError(GuardError):
    """Invalid policy configuration.

    Raised when:
    - A numeric option is out of range (e.g., failure_threshold < 1)
    - A rate window of zero is configured
    - A duration string cannot be parsed
    - A policy file cannot be read or has the wrong shape
    """

    def __init__(
        self,
        message: str,
        context: ErrorContext | None = None,
        *,
        option: str | None = None,
        value: Any = None,
    ) -> None:
        ctx = context or ErrorContext(source="config")
        if option:
            ctx.details["option"] = option
        if value is not None:
            ctx.details["value"] = value
        super().__init__(message, ctx)
        self.option = option
        self.value = value


class CircuitOpenError(GuardError):
    """Dependency is isolated; the operation was not dispatched.

    Callers should fail fast or use a fallback. This layer never retries it.
    """

    http_status: ClassVar[int] = 503

    def __init__(
        self,
        dependency: str,
        *,
        retry_after: float | None = None,
    ) -> None:
        ctx = ErrorContext(dependency=dependency, source="circuit_breaker")
        if retry_after is not None:
            ctx.details["retry_after"] = retry_after
        super().__init__("Circuit breaker is open", ctx)
        self.retry_after = retry_after


class RateLimitExceededError(GuardError):
    """Admission denied because the dependency's window is at capacity."""

    http_status: ClassVar[int] = 503

    def __init__(
        self,
        dependency: str,
        *,
        capacity: int,
        window: float,
        retry_after: float | None = None,
    ) -> None:
        ctx = ErrorContext(dependency=dependency, source="rate_limiter")
        ctx.details["capacity"] = capacity
        ctx.details["window"] = window
        if retry_after is not None:
            ctx.details["retry_after"] = retry_after
        super().__init__(
            f"Rate limit exceeded ({capacity} per {window:g}s)", ctx
        )
        self.capacity = capacity
        self.window = window
        self.retry_after = retry_after


class OperationTimeoutError(GuardError):
    """A single attempt exceeded its per-attempt timeout.

    Always classified as retryable.
    """

    http_status: ClassVar[int] = 504

    def __init__(
        self,
        timeout: float,
        *,
        dependency: str | None = None,
        attempt: int | None = None,
    ) -> None:
        ctx = ErrorContext(dependency=dependency, source="retry")
        ctx.details["timeout"] = timeout
        if attempt is not None:
            ctx.details["attempt"] = attempt
        super().__init__(f"Operation timed out after {timeout:g}s", ctx)
        self.timeout = timeout
        self.attempt = attempt


class MaxRetriesExceededError(GuardError):
    """All attempts failed with retryable errors.

    Attributes:
        last_error: The error raised by the final attempt
        attempts: Number of attempts made
    """

    http_status: ClassVar[int] = 504

    def __init__(
        self,
        last_error: BaseException,
        attempts: int,
        *,
        dependency: str | None = None,
    ) -> None:
        ctx = ErrorContext(dependency=dependency, source="retry")
        ctx.details["attempts"] = attempts
        ctx.details["last_error"] = type(last_error).__name__
        super().__init__(
            f"Gave up after {attempts} attempts: {last_error}", ctx
        )
        self.last_error = last_error
        self.attempts = attempts
        self.__cause__ = last_error
