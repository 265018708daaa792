"""Retry classification and exponential backoff."""

from __future__ import annotations

import asyncio
import random
from dataclasses import dataclass

from pydantic import ValidationError
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError

from cartojobs.jobs.errors import (
    SubmissionError,
    TerminalTaskError,
    TransientTaskError,
    UnknownTaskError,
)
from cartojobs.jobs.record import DEFAULT_MAX_ATTEMPTS, FailureKind

# Checked in order; the first matching group wins
TERMINAL_ERRORS: tuple[type[BaseException], ...] = (
    TerminalTaskError,
    SubmissionError,
    ValidationError,
    ValueError,
    TypeError,
    KeyError,
)
RETRYABLE_ERRORS: tuple[type[BaseException], ...] = (
    TransientTaskError,
    asyncio.TimeoutError,
    TimeoutError,
    RedisConnectionError,
    RedisTimeoutError,
    ConnectionError,
    OSError,
)


@dataclass(frozen=True)
class RetryPolicy:
    """How many times a job may run and how long to wait between runs.

    Attributes:
        max_attempts: Total execution attempts before the job fails for good
        base_delay: Delay before the first retry, in seconds
        multiplier: Growth factor per further attempt
        max_delay: Upper bound on any single delay
        jitter: Fraction of the delay added at random (0 disables)
        retry_unclassified: Whether errors outside both sets are retried
    """

    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    base_delay: float = 1.0
    multiplier: float = 2.0
    max_delay: float = 60.0
    jitter: float = 0.0
    retry_unclassified: bool = True

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.base_delay < 0 or self.max_delay < 0:
            raise ValueError("delays must not be negative")

    def classify(self, exc: BaseException) -> FailureKind:
        """Sort a handler error into transient or terminal."""
        if isinstance(exc, UnknownTaskError):
            return FailureKind.UNKNOWN_TASK
        if isinstance(exc, TransientTaskError):
            return FailureKind.TRANSIENT
        if isinstance(exc, TERMINAL_ERRORS):
            return FailureKind.TERMINAL
        if isinstance(exc, RETRYABLE_ERRORS):
            return FailureKind.TRANSIENT
        return FailureKind.TRANSIENT if self.retry_unclassified else FailureKind.TERMINAL

    def delay_for(self, attempts: int) -> float:
        """Backoff before the next attempt, given attempts made so far."""
        if attempts < 1:
            return 0.0
        delay = min(self.base_delay * self.multiplier ** (attempts - 1), self.max_delay)
        if self.jitter:
            delay += random.uniform(0, delay * self.jitter)  # nosec B311 - not crypto
        return delay
