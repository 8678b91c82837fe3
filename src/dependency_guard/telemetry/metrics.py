"""
Metrics collection for dependency-guard.

Aggregates telemetry events into per-dependency counters and a latency
histogram, exportable in Prometheus text format.
"""

from __future__ import annotations

import statistics
import threading
from collections import defaultdict
from dataclasses import dataclass, field

from dependency_guard.telemetry.events import EventType, TelemetryEvent


@dataclass
class HistogramBuckets:
    """Histogram bucket configuration (seconds)."""

    boundaries: list[float] = field(
        default_factory=lambda: [
            0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0
        ]
    )

    def get_bucket(self, value: float) -> str:
        """Get bucket label for value."""
        for boundary in self.boundaries:
            if value <= boundary:
                return str(boundary)
        return "+Inf"


@dataclass
class DependencyMetrics:
    """Snapshot of metrics for one dependency.

    Attributes:
        succeeded: Calls that returned a value
        failed: Calls that ended in an error after dispatch
        circuit_rejected: Calls rejected by the circuit breaker
        rate_limited: Calls rejected by the rate limiter
        circuit_opens: Times the circuit opened
        attempts: Total attempts across dispatched calls
        latency_samples: Latency samples in seconds
        errors_by_kind: Failed calls per error kind
    """

    succeeded: int = 0
    failed: int = 0
    circuit_rejected: int = 0
    rate_limited: int = 0
    circuit_opens: int = 0
    attempts: int = 0
    latency_samples: list[float] = field(default_factory=list)
    errors_by_kind: dict[str, int] = field(default_factory=dict)

    @property
    def dispatched(self) -> int:
        """Calls that reached the operation."""
        return self.succeeded + self.failed

    @property
    def error_rate(self) -> float:
        """Failed share of dispatched calls."""
        if self.dispatched == 0:
            return 0.0
        return self.failed / self.dispatched

    @property
    def retries(self) -> int:
        """Attempts beyond the first, across dispatched calls."""
        return max(0, self.attempts - self.dispatched)

    @property
    def latency_p50_ms(self) -> float:
        """Get 50th percentile latency."""
        if not self.latency_samples:
            return 0.0
        return statistics.median(self.latency_samples) * 1000

    @property
    def avg_latency_ms(self) -> float:
        """Get average latency."""
        if not self.latency_samples:
            return 0.0
        return statistics.mean(self.latency_samples) * 1000


class MetricsSink:
    """Telemetry sink that aggregates metrics per dependency.

    Thread-safe.

    Example:
        >>> metrics = MetricsSink()
        >>> executor = ProtectedCallExecutor(registry, sink=metrics)
        >>> print(metrics.to_prometheus())
    """

    MAX_SAMPLES = 1000

    def __init__(self, histogram_buckets: HistogramBuckets | None = None) -> None:
        self._lock = threading.Lock()
        self._buckets = histogram_buckets or HistogramBuckets()

        self._counters: dict[str, dict[EventType, int]] = defaultdict(
            lambda: defaultdict(int)
        )
        self._attempts: dict[str, int] = defaultdict(int)
        self._errors: dict[str, dict[str, int]] = defaultdict(
            lambda: defaultdict(int)
        )
        self._latency_samples: dict[str, list[float]] = defaultdict(list)
        self._latency_buckets: dict[str, dict[str, int]] = defaultdict(
            lambda: defaultdict(int)
        )
        self._latency_sum: dict[str, float] = defaultdict(float)

    def emit(self, event: TelemetryEvent) -> None:
        dep = event.dependency
        with self._lock:
            self._counters[dep][event.type] += 1

            if event.type in (EventType.CALL_SUCCEEDED, EventType.CALL_FAILED):
                self._attempts[dep] += int(event.fields.get("attempts", 0))

            if event.type == EventType.CALL_FAILED:
                kind = str(event.fields.get("error_kind", "unknown"))
                self._errors[dep][kind] += 1

            latency_ms = event.fields.get("latency_ms")
            if latency_ms is not None:
                latency = float(latency_ms) / 1000.0
                samples = self._latency_samples[dep]
                samples.append(latency)
                if len(samples) > self.MAX_SAMPLES:
                    del samples[: len(samples) - self.MAX_SAMPLES]
                self._latency_buckets[dep][self._buckets.get_bucket(latency)] += 1
                self._latency_sum[dep] += latency

    def get_snapshot(self, dependency: str) -> DependencyMetrics:
        """Get metrics for one dependency.

        Args:
            dependency: Dependency name

        Returns:
            DependencyMetrics (zeros if never seen)
        """
        with self._lock:
            counters = self._counters.get(dependency, {})
            return DependencyMetrics(
                succeeded=counters.get(EventType.CALL_SUCCEEDED, 0),
                failed=counters.get(EventType.CALL_FAILED, 0),
                circuit_rejected=counters.get(EventType.CIRCUIT_REJECTED, 0),
                rate_limited=counters.get(EventType.RATE_LIMITED, 0),
                circuit_opens=counters.get(EventType.CIRCUIT_OPENED, 0),
                attempts=self._attempts.get(dependency, 0),
                latency_samples=list(self._latency_samples.get(dependency, [])),
                errors_by_kind=dict(self._errors.get(dependency, {})),
            )

    def dependencies(self) -> list[str]:
        """Get all dependencies seen so far."""
        with self._lock:
            return sorted(self._counters)

    def reset(self) -> None:
        """Reset all metrics."""
        with self._lock:
            self._counters.clear()
            self._attempts.clear()
            self._errors.clear()
            self._latency_samples.clear()
            self._latency_buckets.clear()
            self._latency_sum.clear()

    def to_prometheus(self) -> str:
        """Export metrics in Prometheus format.

        Returns:
            Prometheus-formatted metrics string
        """
        lines: list[str] = []

        with self._lock:
            lines.append("# HELP depguard_events_total Protected-call events")
            lines.append("# TYPE depguard_events_total counter")
            for dep, counters in sorted(self._counters.items()):
                for event_type, count in sorted(counters.items(), key=lambda kv: kv[0].value):
                    lines.append(
                        f'depguard_events_total{{dependency="{dep}",event="{event_type.value}"}} {count}'
                    )

            lines.append("# HELP depguard_attempts_total Attempts across dispatched calls")
            lines.append("# TYPE depguard_attempts_total counter")
            for dep, count in sorted(self._attempts.items()):
                lines.append(f'depguard_attempts_total{{dependency="{dep}"}} {count}')

            lines.append("# HELP depguard_failures_total Failed calls by error kind")
            lines.append("# TYPE depguard_failures_total counter")
            for dep, kinds in sorted(self._errors.items()):
                for kind, count in sorted(kinds.items()):
                    lines.append(
                        f'depguard_failures_total{{dependency="{dep}",error_kind="{kind}"}} {count}'
                    )

            lines.append("# HELP depguard_call_duration_seconds Protected-call latency")
            lines.append("# TYPE depguard_call_duration_seconds histogram")
            for dep, buckets in sorted(self._latency_buckets.items()):
                cumulative = 0
                for boundary in self._buckets.boundaries:
                    cumulative += buckets.get(str(boundary), 0)
                    lines.append(
                        f'depguard_call_duration_seconds_bucket{{dependency="{dep}",le="{boundary}"}} {cumulative}'
                    )
                cumulative += buckets.get("+Inf", 0)
                lines.append(
                    f'depguard_call_duration_seconds_bucket{{dependency="{dep}",le="+Inf"}} {cumulative}'
                )
                lines.append(
                    f'depguard_call_duration_seconds_sum{{dependency="{dep}"}} {self._latency_sum[dep]}'
                )
                lines.append(
                    f'depguard_call_duration_seconds_count{{dependency="{dep}"}} {cumulative}'
                )

        return "\n".join(lines)
