"""Root pytest fixtures for dependency-guard tests."""

from __future__ import annotations

import pytest

from dependency_guard.telemetry import InMemorySink


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingSleep:
    """Sleep replacement that records delays and advances a FakeClock."""

    def __init__(self, clock: FakeClock | None = None) -> None:
        self.delays: list[float] = []
        self._clock = clock

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        if self._clock is not None:
            self._clock.advance(delay)


@pytest.fixture
def clock() -> FakeClock:
    """Provide a fake clock starting at t=1000s."""
    return FakeClock()


@pytest.fixture
def sleep(clock: FakeClock) -> RecordingSleep:
    """Provide a recording sleep bound to the fake clock."""
    return RecordingSleep(clock)


@pytest.fixture
def sink() -> InMemorySink:
    """Provide an in-memory telemetry sink."""
    return InMemorySink()
