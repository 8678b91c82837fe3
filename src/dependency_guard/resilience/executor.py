"""
Protected call executor: circuit breaking, rate limiting and retry.

Single entry point used by every call site that talks to an external
dependency. For each call:
1. Circuit admission
2. Sliding-window admission (recorded in the same step)
3. Retry orchestration with per-attempt timeouts, re-checking the circuit
   before every retry
4. Outcome recorded into the circuit, telemetry emitted
"""

from __future__ import annotations

import asyncio
import time
import uuid
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, TypeVar, cast

from dependency_guard.config import PolicyConfig, PolicyRegistry
from dependency_guard.errors import classify_error
from dependency_guard.resilience.circuit_breaker import CircuitBreaker
from dependency_guard.resilience.rate_limiter import RateLimiter
from dependency_guard.resilience.retry import RetryOrchestrator, RetryResult
from dependency_guard.resilience.signals import DependencyHealth, HealthReport
from dependency_guard.telemetry import (
    EventType,
    LogContext,
    NullSink,
    TelemetryEvent,
    get_logger,
    log_context,
)

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from dependency_guard.telemetry import TelemetrySink

T = TypeVar("T")

logger = get_logger("dependency_guard.executor")


@dataclass
class CallStats:
    """Statistics from a protected call.

    Attributes:
        success: Whether the operation succeeded
        attempts: Attempts made (0 if rejected before dispatch)
        latency_ms: Time from dispatch to outcome, including backoff
        total_delay: Backoff slept between attempts, in seconds
        circuit_phase: Circuit phase when the call was admitted
        retry_result: Result from the retry orchestrator
    """

    success: bool = False
    attempts: int = 0
    latency_ms: float = 0.0
    total_delay: float = 0.0
    circuit_phase: str = "unknown"
    retry_result: RetryResult[Any] | None = None


class ProtectedCallExecutor:
    """Executes operations against named dependencies under their policies.

    Owns one circuit breaker and one rate limiter; both keep independent
    state per dependency. Dependencies without a registered policy use the
    registry's default policy.

    Example:
        >>> executor = ProtectedCallExecutor(PolicyRegistry.platform_defaults())
        >>> doc = await executor.execute_protected(
        ...     "datastore", lambda: container.read_item(item_id), "read_profile"
        ... )
    """

    def __init__(
        self,
        policies: PolicyRegistry | PolicyConfig | None = None,
        sink: TelemetrySink | None = None,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        """Initialize executor.

        Args:
            policies: Policy registry, or one policy for every dependency
            sink: Telemetry sink (default: discard events)
            clock: Monotonic clock in seconds, shared by all components
            sleep: Coroutine used for backoff waits

        Raises:
            ConfigurationError: If a policy has an invalid rate window
        """
        if isinstance(policies, PolicyConfig):
            policies = PolicyRegistry(default=policies)
        self._policies = policies if policies is not None else PolicyRegistry()
        self._sink: TelemetrySink = sink if sink is not None else NullSink()
        self._clock = clock
        self._sleep = sleep

        self._breaker = CircuitBreaker(self._policies, clock=clock)
        self._limiter = RateLimiter(self._policies, clock=clock)

    @property
    def policies(self) -> PolicyRegistry:
        """Get the policy registry."""
        return self._policies

    @property
    def circuit_breaker(self) -> CircuitBreaker:
        """Get the circuit breaker."""
        return self._breaker

    @property
    def rate_limiter(self) -> RateLimiter:
        """Get the rate limiter."""
        return self._limiter

    def policy_for(self, dependency: str) -> PolicyConfig:
        """Get the policy applied to a dependency."""
        return self._policies.get(dependency)

    async def execute_protected(
        self,
        dependency: str,
        operation: Callable[[], Awaitable[T]],
        operation_name: str,
    ) -> T:
        """Execute an operation under the dependency's policy.

        Args:
            dependency: Dependency name
            operation: Async operation to execute
            operation_name: Name used in logs and telemetry

        Returns:
            Operation result

        Raises:
            CircuitOpenError: If the dependency is isolated
            RateLimitExceededError: If the dependency's window is full
            MaxRetriesExceededError: If every attempt failed transiently
            Exception: The first fatal error raised by the operation
        """
        result, _ = await self.execute_protected_with_stats(
            dependency, operation, operation_name
        )
        return result

    async def execute_protected_with_stats(
        self,
        dependency: str,
        operation: Callable[[], Awaitable[T]],
        operation_name: str,
    ) -> tuple[T, CallStats]:
        """Execute an operation and return call statistics.

        Args:
            dependency: Dependency name
            operation: Async operation to execute
            operation_name: Name used in logs and telemetry

        Returns:
            Tuple of (result, stats)
        """
        context = LogContext(
            call_id=uuid.uuid4().hex[:16],
            dependency=dependency,
            operation_name=operation_name,
        )
        with log_context(context):
            return await self._execute(dependency, operation, operation_name)

    async def _execute(
        self,
        dependency: str,
        operation: Callable[[], Awaitable[T]],
        operation_name: str,
    ) -> tuple[T, CallStats]:
        policy = self._policies.get(dependency)
        stats = CallStats()

        admission = self._breaker.admit(dependency)
        if not admission.allowed:
            self._reject_open(admission.error, dependency, operation_name)
            raise admission.error  # type: ignore[misc]

        if admission.transition is not None:
            self._emit(EventType.CIRCUIT_HALF_OPENED, dependency, operation_name)
            stats.circuit_phase = admission.transition.to_phase.value
        else:
            stats.circuit_phase = self._breaker.phase(dependency).value

        rate = self._limiter.acquire(dependency)
        if not rate.allowed:
            retry_after = getattr(rate.error, "retry_after", None)
            logger.info("Call rejected, rate limit reached", retry_after=retry_after)
            self._emit(
                EventType.RATE_LIMITED,
                dependency,
                operation_name,
                retry_after=retry_after,
            )
            raise rate.error  # type: ignore[misc]

        orchestrator = RetryOrchestrator(
            policy.retry, sleep=self._sleep, clock=self._clock
        )
        started = self._clock()
        try:
            result = await orchestrator.execute(
                operation,
                dependency=dependency,
                before_attempt=lambda: self._readmit(dependency, operation_name),
            )
        except asyncio.CancelledError:
            logger.info("Call cancelled by caller")
            raise

        latency_ms = (self._clock() - started) * 1000
        stats.retry_result = result
        stats.attempts = result.attempts
        stats.latency_ms = latency_ms
        stats.total_delay = result.total_delay

        if result.success:
            closed = self._breaker.record_success(dependency)
            stats.success = True
            self._emit(
                EventType.CALL_SUCCEEDED,
                dependency,
                operation_name,
                attempts=result.attempts,
                latency_ms=latency_ms,
            )
            if closed is not None:
                self._emit(EventType.CIRCUIT_CLOSED, dependency, operation_name)
            return result.value, stats  # type: ignore[return-value]

        error = cast(BaseException, result.error)
        if result.preempted:
            # The circuit opened while this call was backing off
            self._reject_open(error, dependency, operation_name)
            raise error

        opened = self._breaker.record_failure(dependency)
        error_kind = classify_error(error).value
        logger.error(
            "Call failed",
            attempts=result.attempts,
            error_kind=error_kind,
            error_type=type(error).__name__,
            error=str(error),
        )
        self._emit(
            EventType.CALL_FAILED,
            dependency,
            operation_name,
            attempts=result.attempts,
            error_kind=error_kind,
        )
        if opened is not None:
            self._emit(
                EventType.CIRCUIT_OPENED,
                dependency,
                operation_name,
                open_timeout=policy.open_timeout,
            )
        raise error

    def _readmit(self, dependency: str, operation_name: str) -> BaseException | None:
        admission = self._breaker.admit(dependency)
        if not admission.allowed:
            return admission.error
        if admission.transition is not None:
            self._emit(EventType.CIRCUIT_HALF_OPENED, dependency, operation_name)
        return None

    def _reject_open(
        self, error: BaseException | None, dependency: str, operation_name: str
    ) -> None:
        retry_after = getattr(error, "retry_after", None)
        logger.info("Call rejected, circuit open", retry_after=retry_after)
        self._emit(
            EventType.CIRCUIT_REJECTED,
            dependency,
            operation_name,
            retry_after=retry_after,
        )

    def _emit(
        self,
        event_type: EventType,
        dependency: str,
        operation_name: str,
        **fields: Any,
    ) -> None:
        event = TelemetryEvent(
            type=event_type,
            dependency=dependency,
            operation_name=operation_name,
            fields=fields,
        )
        try:
            self._sink.emit(event)
        except Exception as e:
            logger.warning(
                "Telemetry sink failed",
                event=event_type.value,
                error_type=type(e).__name__,
                error=str(e),
            )

    def health_snapshot(self) -> dict[str, DependencyHealth]:
        """Get per-dependency health.

        Covers every configured dependency and every dependency referenced
        at runtime. Reading does not perform circuit transitions.

        Returns:
            Health per dependency name
        """
        names = dict.fromkeys(
            [
                *self._policies.dependencies(),
                *self._breaker.dependencies(),
                *self._limiter.dependencies(),
            ]
        )

        snapshot: dict[str, DependencyHealth] = {}
        for name in names:
            circuit = self._breaker.snapshot(name)
            used, capacity = self._limiter.usage(name)
            snapshot[name] = DependencyHealth(
                dependency=name,
                phase=circuit.phase,
                consecutive_failures=circuit.consecutive_failures,
                rate_used=used,
                rate_capacity=capacity,
            )
        return snapshot

    def health_report(self) -> HealthReport:
        """Get aggregated health: degraded if any circuit is not closed."""
        return HealthReport.from_snapshot(self.health_snapshot())

    def __repr__(self) -> str:
        return f"ProtectedCallExecutor(policies={self._policies!r})"
