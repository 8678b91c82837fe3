"""Tests for the protected call executor."""

import asyncio
import threading

import pytest

from dependency_guard.config import PolicyConfig, PolicyRegistry
from dependency_guard.errors import (
    CircuitOpenError,
    MaxRetriesExceededError,
    RateLimitExceededError,
)
from dependency_guard.resilience import HealthStatus, ProtectedCallExecutor
from dependency_guard.telemetry import EventType, InMemorySink, TelemetryEvent


class Unavailable(Exception):
    """Transient dependency failure (HTTP 503)."""

    status_code = 503


def policy(**record) -> PolicyConfig:
    return PolicyConfig.from_mapping(record)


def make_executor(clock, sleep, sink, **record) -> ProtectedCallExecutor:
    return ProtectedCallExecutor(policy(**record), sink=sink, clock=clock, sleep=sleep)


class CountingOperation:
    """Async operation that fails with the queued errors, then succeeds."""

    def __init__(self, *errors: BaseException, value: str = "ok") -> None:
        self.errors = list(errors)
        self.calls = 0
        self.value = value

    async def __call__(self) -> str:
        self.calls += 1
        if self.errors:
            raise self.errors.pop(0)
        return self.value


class TestCircuitScenario:
    """Circuit trip and recovery through the executor."""

    @pytest.mark.asyncio
    async def test_trip_reject_probe_close(self, clock, sleep, sink) -> None:
        """Two failures open; early call rejected; probe after timeout closes."""
        executor = make_executor(
            clock,
            sleep,
            sink,
            failureThreshold=2,
            openTimeout="1000ms",
            halfOpenSuccessThreshold=1,
            retry={"maxAttempts": 0},
        )

        for _ in range(2):
            with pytest.raises(ValueError):
                await executor.execute_protected(
                    "inference", CountingOperation(ValueError("bad prompt")), "score"
                )
        assert executor.circuit_breaker.phase("inference").value == "open"

        clock.advance(0.5)
        rejected = CountingOperation()
        with pytest.raises(CircuitOpenError) as exc_info:
            await executor.execute_protected("inference", rejected, "score")
        assert rejected.calls == 0
        assert exc_info.value.retry_after == pytest.approx(0.5)

        clock.advance(0.7)
        probe = CountingOperation()
        assert await executor.execute_protected("inference", probe, "score") == "ok"
        assert probe.calls == 1
        assert executor.circuit_breaker.phase("inference").value == "closed"

        assert await executor.execute_protected("inference", CountingOperation(), "score") == "ok"

        assert sink.types() == [
            EventType.CALL_FAILED,
            EventType.CALL_FAILED,
            EventType.CIRCUIT_OPENED,
            EventType.CIRCUIT_REJECTED,
            EventType.CIRCUIT_HALF_OPENED,
            EventType.CALL_SUCCEEDED,
            EventType.CIRCUIT_CLOSED,
            EventType.CALL_SUCCEEDED,
        ]

    @pytest.mark.asyncio
    async def test_circuit_rejection_skips_rate_limiter(self, clock, sleep, sink) -> None:
        """Calls rejected by the circuit never consume window capacity."""
        executor = make_executor(
            clock, sleep, sink, failureThreshold=1, retry={"maxAttempts": 0}
        )
        with pytest.raises(ValueError):
            await executor.execute_protected(
                "datastore", CountingOperation(ValueError("bad query")), "query"
            )
        used_before = executor.rate_limiter.usage("datastore")[0]

        for _ in range(3):
            with pytest.raises(CircuitOpenError):
                await executor.execute_protected("datastore", CountingOperation(), "query")

        assert executor.rate_limiter.usage("datastore")[0] == used_before


class TestRateScenario:
    """Sliding-window admission through the executor."""

    @pytest.mark.asyncio
    async def test_fourth_call_rejected_fifth_allowed(self, clock, sleep, sink) -> None:
        executor = make_executor(
            clock, sleep, sink, rateLimit={"capacity": 3, "window": "1000ms"}
        )

        for _ in range(3):
            assert await executor.execute_protected("datastore", CountingOperation(), "read") == "ok"
            clock.advance(0.1)

        fourth = CountingOperation()
        with pytest.raises(RateLimitExceededError) as exc_info:
            await executor.execute_protected("datastore", fourth, "read")
        assert fourth.calls == 0
        assert exc_info.value.retry_after == pytest.approx(0.7)

        clock.advance(0.75)
        assert await executor.execute_protected("datastore", CountingOperation(), "read") == "ok"

        rate_limited = sink.of_type(EventType.RATE_LIMITED)
        assert len(rate_limited) == 1
        assert rate_limited[0].fields["retry_after"] == pytest.approx(0.7)


class TestRetryThroughExecutor:
    """Retry termination and telemetry."""

    @pytest.mark.asyncio
    async def test_retries_then_succeeds(self, clock, sleep, sink) -> None:
        executor = make_executor(
            clock, sleep, sink, retry={"maxAttempts": 3, "baseBackoff": "1s"}
        )
        operation = CountingOperation(Unavailable(), Unavailable())

        result, stats = await executor.execute_protected_with_stats(
            "functions", operation, "invoke"
        )

        assert result == "ok"
        assert operation.calls == 3
        assert stats.success is True
        assert stats.attempts == 3
        assert stats.total_delay == 3.0
        assert stats.latency_ms == pytest.approx(3000.0)
        assert stats.circuit_phase == "closed"
        assert sleep.delays == [1.0, 2.0]

        [succeeded] = sink.of_type(EventType.CALL_SUCCEEDED)
        assert succeeded.fields == {"attempts": 3, "latency_ms": pytest.approx(3000.0)}
        assert executor.circuit_breaker.snapshot("functions").consecutive_failures == 0

    @pytest.mark.asyncio
    async def test_max_retries_exceeded(self, clock, sleep, sink) -> None:
        """Exhausted retries raise MaxRetriesExceededError and count one failure."""
        executor = make_executor(
            clock, sleep, sink, failureThreshold=5, retry={"maxAttempts": 2}
        )
        operation = CountingOperation(Unavailable(), Unavailable(), Unavailable())

        with pytest.raises(MaxRetriesExceededError) as exc_info:
            await executor.execute_protected("functions", operation, "invoke")

        assert operation.calls == 3
        assert exc_info.value.attempts == 3
        assert isinstance(exc_info.value.last_error, Unavailable)
        assert executor.circuit_breaker.snapshot("functions").consecutive_failures == 1

        [failed] = sink.of_type(EventType.CALL_FAILED)
        assert failed.fields == {"attempts": 3, "error_kind": "max_retries_exceeded"}

    @pytest.mark.asyncio
    async def test_fatal_error_passthrough(self, clock, sleep, sink) -> None:
        """Fatal errors are raised unwrapped after a single attempt."""
        executor = make_executor(clock, sleep, sink, retry={"maxAttempts": 3})
        error = PermissionError("access denied")
        operation = CountingOperation(error)

        with pytest.raises(PermissionError) as exc_info:
            await executor.execute_protected("secrets", operation, "get_secret")

        assert exc_info.value is error
        assert operation.calls == 1
        assert sleep.delays == []
        [failed] = sink.of_type(EventType.CALL_FAILED)
        assert failed.fields["error_kind"] == "fatal"

    @pytest.mark.asyncio
    async def test_caller_cancellation(self, sink) -> None:
        """Cancelling the caller propagates and records no outcome."""
        executor = ProtectedCallExecutor(
            policy(retry={"perAttemptTimeout": "10s"}), sink=sink
        )
        started = asyncio.Event()

        async def hang() -> str:
            started.set()
            await asyncio.sleep(10)
            return "never"

        task = asyncio.ensure_future(executor.execute_protected("inference", hang, "score"))
        await started.wait()
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert sink.of_type(EventType.CALL_FAILED) == []
        assert executor.circuit_breaker.snapshot("inference").consecutive_failures == 0


class GatedSleep:
    """Backoff sleep that parks the caller until released."""

    def __init__(self) -> None:
        self.parked = asyncio.Event()
        self.released = asyncio.Event()

    async def __call__(self, delay: float) -> None:
        self.parked.set()
        await self.released.wait()


class TestCircuitDuringBackoff:
    """Calls already backing off honour a circuit that opened meanwhile."""

    @pytest.mark.asyncio
    async def test_retry_not_dispatched_while_open(self, clock, sink) -> None:
        backoff = GatedSleep()
        executor = make_executor(
            clock,
            backoff,
            sink,
            failureThreshold=1,
            openTimeout="60s",
            retry={"maxAttempts": 1},
        )
        straggler = CountingOperation(Unavailable())
        task = asyncio.ensure_future(
            executor.execute_protected("inference", straggler, "score")
        )
        await backoff.parked.wait()

        with pytest.raises(ValueError):
            await executor.execute_protected(
                "inference", CountingOperation(ValueError("bad prompt")), "score"
            )
        assert executor.circuit_breaker.phase("inference").value == "open"

        backoff.released.set()
        with pytest.raises(CircuitOpenError) as exc_info:
            await task

        assert straggler.calls == 1
        assert exc_info.value.retry_after == pytest.approx(60.0)
        assert executor.circuit_breaker.phase("inference").value == "open"
        assert len(sink.of_type(EventType.CALL_FAILED)) == 1
        assert len(sink.of_type(EventType.CIRCUIT_REJECTED)) == 1

    @pytest.mark.asyncio
    async def test_retry_becomes_probe_after_open_timeout(self, clock, sink) -> None:
        backoff = GatedSleep()
        executor = make_executor(
            clock,
            backoff,
            sink,
            failureThreshold=1,
            openTimeout="60s",
            halfOpenSuccessThreshold=1,
            retry={"maxAttempts": 1},
        )
        straggler = CountingOperation(Unavailable())
        task = asyncio.ensure_future(
            executor.execute_protected("inference", straggler, "score")
        )
        await backoff.parked.wait()

        with pytest.raises(ValueError):
            await executor.execute_protected(
                "inference", CountingOperation(ValueError("bad prompt")), "score"
            )

        clock.advance(61)
        backoff.released.set()
        assert await task == "ok"

        assert straggler.calls == 2
        assert executor.circuit_breaker.phase("inference").value == "closed"
        assert sink.types()[-3:] == [
            EventType.CIRCUIT_HALF_OPENED,
            EventType.CALL_SUCCEEDED,
            EventType.CIRCUIT_CLOSED,
        ]


class TestTelemetryIsolation:
    """Telemetry sink failures never change call outcomes."""

    @pytest.mark.asyncio
    async def test_broken_sink(self, clock, sleep) -> None:
        class BrokenSink:
            def emit(self, event: TelemetryEvent) -> None:
                raise RuntimeError("collector unavailable")

        executor = ProtectedCallExecutor(
            policy(failureThreshold=1, retry={"maxAttempts": 0}),
            sink=BrokenSink(),
            clock=clock,
            sleep=sleep,
        )

        assert await executor.execute_protected("inference", CountingOperation(), "score") == "ok"
        with pytest.raises(ValueError):
            await executor.execute_protected(
                "inference", CountingOperation(ValueError("bad")), "score"
            )
        with pytest.raises(CircuitOpenError):
            await executor.execute_protected("inference", CountingOperation(), "score")


class TestPolicies:
    """Per-dependency policies and isolation."""

    @pytest.mark.asyncio
    async def test_unknown_dependency_uses_default(self, clock, sleep, sink) -> None:
        registry = PolicyRegistry(
            {"inference": policy(failureThreshold=1, retry={"maxAttempts": 0})},
            default=policy(failureThreshold=3, retry={"maxAttempts": 0}),
        )
        executor = ProtectedCallExecutor(registry, sink=sink, clock=clock, sleep=sleep)

        assert executor.policy_for("inference").failure_threshold == 1
        assert executor.policy_for("email").failure_threshold == 3

        with pytest.raises(ValueError):
            await executor.execute_protected(
                "email", CountingOperation(ValueError("bad")), "send"
            )
        assert executor.circuit_breaker.phase("email").value == "closed"

    @pytest.mark.asyncio
    async def test_dependencies_isolated(self, clock, sleep, sink) -> None:
        executor = make_executor(
            clock, sleep, sink, failureThreshold=1, retry={"maxAttempts": 0}
        )
        with pytest.raises(ValueError):
            await executor.execute_protected(
                "inference", CountingOperation(ValueError("bad")), "score"
            )

        with pytest.raises(CircuitOpenError):
            await executor.execute_protected("inference", CountingOperation(), "score")
        assert await executor.execute_protected("datastore", CountingOperation(), "read") == "ok"


class TestHealth:
    """Health snapshot and report."""

    @pytest.mark.asyncio
    async def test_health_snapshot(self, clock, sleep, sink) -> None:
        registry = PolicyRegistry(
            {"secrets": policy()},
            default=policy(
                failureThreshold=1, rateLimit={"capacity": 10}, retry={"maxAttempts": 0}
            ),
        )
        executor = ProtectedCallExecutor(registry, sink=sink, clock=clock, sleep=sleep)

        await executor.execute_protected("datastore", CountingOperation(), "read")
        with pytest.raises(ValueError):
            await executor.execute_protected(
                "inference", CountingOperation(ValueError("bad")), "score"
            )

        snapshot = executor.health_snapshot()
        assert set(snapshot) == {"secrets", "datastore", "inference"}

        assert snapshot["secrets"].phase == "closed"
        assert snapshot["secrets"].rate_usage == "0/500"
        assert snapshot["datastore"].rate_usage == "1/10"
        assert snapshot["inference"].phase == "open"
        assert snapshot["inference"].consecutive_failures == 1
        assert snapshot["inference"].to_dict() == {
            "phase": "open",
            "consecutive_failures": 1,
            "rate_usage": "1/10",
            "status": "degraded",
        }

        report = executor.health_report()
        assert report.status == HealthStatus.DEGRADED
        assert report.to_dict()["dependencies"]["datastore"]["status"] == "healthy"

    def test_health_report_healthy(self) -> None:
        executor = ProtectedCallExecutor(PolicyRegistry.platform_defaults())
        report = executor.health_report()
        assert report.status == HealthStatus.HEALTHY
        assert set(report.dependencies) == {"inference", "datastore", "secrets", "functions"}


class TestConcurrency:
    """Concurrent callers across threads and tasks."""

    def test_threads_respect_capacity(self, sink) -> None:
        executor = ProtectedCallExecutor(
            policy(rateLimit={"capacity": 20, "window": "1m"}), sink=sink
        )
        outcomes = []
        lock = threading.Lock()

        async def call() -> str:
            return "ok"

        def worker() -> None:
            async def run() -> None:
                for _ in range(5):
                    try:
                        await executor.execute_protected("inference", call, "score")
                    except RateLimitExceededError:
                        result = "limited"
                    else:
                        result = "ok"
                    with lock:
                        outcomes.append(result)

            asyncio.run(run())

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert outcomes.count("ok") == 20
        assert outcomes.count("limited") == 20

    @pytest.mark.asyncio
    async def test_gathered_tasks(self, sink) -> None:
        executor = ProtectedCallExecutor(
            policy(rateLimit={"capacity": 5}), sink=sink
        )

        async def call() -> str:
            await asyncio.sleep(0)
            return "ok"

        results = await asyncio.gather(
            *(executor.execute_protected("datastore", call, "read") for _ in range(8)),
            return_exceptions=True,
        )
        assert sum(1 for r in results if r == "ok") == 5
        assert sum(1 for r in results if isinstance(r, RateLimitExceededError)) == 3
