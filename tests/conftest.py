"""Global pytest configuration and fixtures.

The in-memory broker stands in for Redis; a controllable clock drives
claim deadlines so visibility timeouts can be tested without sleeping.
"""

from __future__ import annotations

from collections.abc import Callable

import pytest

from cartojobs.broker import InMemoryBroker
from cartojobs.jobs import JobQueue, RetryPolicy


class FakeClock:
    """Epoch-seconds clock that only moves when told to."""

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def broker(clock: FakeClock) -> InMemoryBroker:
    return InMemoryBroker(clock=clock)


@pytest.fixture
def make_queue(broker: InMemoryBroker, clock: FakeClock) -> Callable[..., JobQueue]:
    """Build queues on the shared broker with instant retries by default."""

    def factory(
        name: str = "IMPORT_QUEUE",
        max_attempts: int = 3,
        visibility_timeout: float = 30.0,
        base_delay: float = 0.0,
        **kwargs: object,
    ) -> JobQueue:
        policy = RetryPolicy(max_attempts=max_attempts, base_delay=base_delay, jitter=0.0)
        return JobQueue(
            name,
            broker,
            retry_policy=policy,
            visibility_timeout=visibility_timeout,
            poll_interval=0.01,
            poll_step=0.01,
            clock=clock,
            **kwargs,  # type: ignore[arg-type]
        )

    return factory


@pytest.fixture
def queue(make_queue: Callable[..., JobQueue]) -> JobQueue:
    return make_queue()
