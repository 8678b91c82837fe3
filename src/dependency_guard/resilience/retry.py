"""
Retry orchestration with capped exponential backoff.

Each attempt is raced against the per-attempt timeout. Retryable failures
are retried after ``min(base_backoff * 2^attempt, max_backoff)`` seconds,
stretched up to a server retry-after hint when one is present. Fatal
failures end the loop at once and are reported unwrapped.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Generic, TypeVar

from dependency_guard.config import RetryConfig
from dependency_guard.errors import (
    MaxRetriesExceededError,
    OperationTimeoutError,
    detect_signal,
    get_retry_after,
)
from dependency_guard.telemetry import get_log_context, get_logger, log_context

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

T = TypeVar("T")

logger = get_logger("dependency_guard.retry")

# Exponents beyond this already exceed any representable cap
_MAX_EXPONENT = 64


class AttemptOutcome(str, Enum):
    """Outcome of a single attempt."""

    SUCCESS = "success"
    RETRYABLE_FAILURE = "retryable_failure"
    FATAL_FAILURE = "fatal_failure"


@dataclass(frozen=True)
class Attempt:
    """Record of one attempt.

    Attributes:
        attempt_number: 1-based attempt number
        started_at: Clock reading when the attempt started
        outcome: How the attempt ended
        error: The error raised, for failed attempts
        duration: Seconds the attempt ran
    """

    attempt_number: int
    started_at: float
    outcome: AttemptOutcome
    error: BaseException | None = None
    duration: float = 0.0


@dataclass
class RetryResult(Generic[T]):
    """Result of a retry operation.

    Attributes:
        success: Whether the operation succeeded
        value: The result value (if success)
        error: The fatal error, or MaxRetriesExceededError (if failed)
        attempts: Number of attempts made
        total_delay: Total backoff slept, in seconds
        history: One record per attempt, in order
        preempted: Whether an admission check stopped a retry before dispatch
    """

    success: bool
    value: T | None = None
    error: BaseException | None = None
    attempts: int = 0
    total_delay: float = 0.0
    history: list[Attempt] = field(default_factory=list)
    preempted: bool = False

    def unwrap(self) -> T:
        """Return the value, or raise the error."""
        if self.success:
            return self.value  # type: ignore[return-value]
        if self.error is None:
            raise RuntimeError("Failed retry result carries no error")
        raise self.error


class RetryOrchestrator:
    """Runs an operation with per-attempt timeouts and bounded retries.

    Example:
        >>> orchestrator = RetryOrchestrator(RetryConfig(max_attempts=2))
        >>> result = await orchestrator.execute(fetch_profile, dependency="datastore")
        >>> if result.success:
        ...     print(result.value)
        ... else:
        ...     print(f"Failed after {result.attempts} attempts")
    """

    def __init__(
        self,
        config: RetryConfig | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialize retry orchestrator.

        Args:
            config: Retry configuration
            sleep: Coroutine used for backoff waits
            clock: Monotonic clock in seconds
        """
        self._config = config or RetryConfig()
        self._sleep = sleep
        self._clock = clock

    @property
    def config(self) -> RetryConfig:
        """Get retry configuration."""
        return self._config

    def calculate_delay(self, attempt: int, retry_after: float | None = None) -> float:
        """Calculate the backoff before the next attempt.

        Args:
            attempt: Index of the attempt that just failed (0-based)
            retry_after: Optional retry-after hint from the server

        Returns:
            Delay in seconds
        """
        exponent = min(attempt, _MAX_EXPONENT)
        computed = min(
            self._config.base_backoff * (2**exponent), self._config.max_backoff
        )

        if retry_after is not None and retry_after > 0:
            return min(max(retry_after, computed), self._config.max_backoff)
        return computed

    def should_retry(self, error: BaseException, attempt: int) -> bool:
        """Check if an error should trigger another attempt.

        Args:
            error: The exception that occurred
            attempt: Index of the attempt that failed (0-based)

        Returns:
            True if retryable and the retry budget is not spent
        """
        if attempt >= self._config.max_attempts:
            return False
        return detect_signal(error) is not None

    async def _run_attempt(
        self,
        operation: Callable[[], Awaitable[T]],
        attempt_number: int,
        dependency: str | None,
    ) -> T:
        timeout = self._config.per_attempt_timeout
        if timeout is None:
            return await operation()

        try:
            return await asyncio.wait_for(operation(), timeout)
        except asyncio.TimeoutError as e:
            raise OperationTimeoutError(
                timeout, dependency=dependency, attempt=attempt_number
            ) from e

    async def execute(
        self,
        operation: Callable[[], Awaitable[T]],
        *,
        dependency: str | None = None,
        on_retry: Callable[[int, BaseException, float], None] | None = None,
        before_attempt: Callable[[], BaseException | None] | None = None,
    ) -> RetryResult[T]:
        """Execute an operation with retry.

        Operation failures are reported in the result, never raised.
        Cancellation of the calling task propagates.

        Args:
            operation: Async operation to execute
            dependency: Dependency name, for errors and logs
            on_retry: Optional callback ``(attempt, error, delay)`` called
                before each backoff sleep
            before_attempt: Optional admission check run after each backoff
                sleep. An error it returns ends the loop without dispatching
                the retry, and the result is marked ``preempted``.

        Returns:
            RetryResult with success status and value/error
        """
        history: list[Attempt] = []
        total_delay = 0.0
        attempt = 0
        call_context = get_log_context()

        while True:
            if attempt > 0 and before_attempt is not None:
                refusal = before_attempt()
                if refusal is not None:
                    logger.info(
                        "Retry abandoned before dispatch",
                        dependency=dependency,
                        attempts=attempt,
                        error_type=type(refusal).__name__,
                    )
                    return RetryResult(
                        success=False,
                        error=refusal,
                        attempts=attempt,
                        total_delay=total_delay,
                        history=history,
                        preempted=True,
                    )

            with log_context(call_context.for_attempt(attempt + 1)):
                started = self._clock()
                try:
                    value = await self._run_attempt(operation, attempt + 1, dependency)
                except Exception as e:
                    signal = detect_signal(e)
                    history.append(
                        Attempt(
                            attempt_number=attempt + 1,
                            started_at=started,
                            outcome=(
                                AttemptOutcome.RETRYABLE_FAILURE
                                if signal is not None
                                else AttemptOutcome.FATAL_FAILURE
                            ),
                            error=e,
                            duration=self._clock() - started,
                        )
                    )

                    if signal is None:
                        return RetryResult(
                            success=False,
                            error=e,
                            attempts=attempt + 1,
                            total_delay=total_delay,
                            history=history,
                        )

                    if not self.should_retry(e, attempt):
                        return RetryResult(
                            success=False,
                            error=MaxRetriesExceededError(
                                e, attempt + 1, dependency=dependency
                            ),
                            attempts=attempt + 1,
                            total_delay=total_delay,
                            history=history,
                        )

                    delay = self.calculate_delay(attempt, get_retry_after(e))
                    total_delay += delay
                    logger.warning(
                        "Transient failure, retrying",
                        dependency=dependency,
                        max_attempts=self._config.max_attempts + 1,
                        signal=signal.value,
                        delay=round(delay, 3),
                        error_type=type(e).__name__,
                    )

                    if on_retry:
                        on_retry(attempt + 1, e, delay)

                    await self._sleep(delay)
                    attempt += 1
                else:
                    history.append(
                        Attempt(
                            attempt_number=attempt + 1,
                            started_at=started,
                            outcome=AttemptOutcome.SUCCESS,
                            duration=self._clock() - started,
                        )
                    )
                    return RetryResult(
                        success=True,
                        value=value,
                        attempts=attempt + 1,
                        total_delay=total_delay,
                        history=history,
                    )


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    config: RetryConfig | None = None,
    on_retry: Callable[[int, BaseException, float], None] | None = None,
) -> T:
    """Execute an operation with retry, raising on failure.

    Args:
        operation: Async operation to execute
        config: Retry configuration
        on_retry: Optional callback called before each retry

    Returns:
        Operation result

    Raises:
        MaxRetriesExceededError: If every attempt failed transiently
        Exception: The first fatal error, unwrapped
    """
    result = await RetryOrchestrator(config).execute(operation, on_retry=on_retry)
    return result.unwrap()
