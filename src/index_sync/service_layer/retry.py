"""Bounded exponential backoff for retryable sync operations."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
import random


@dataclass(frozen=True)
class RetryPolicy:
    """How many times a retryable operation is attempted and how long to wait in between.

    The delay before retry ``n`` (1-based) is
    ``min(initial_delay * multiplier ** (n - 1), max_delay)``, scaled by a random
    factor in ``[1 - jitter, 1]``.
    """

    max_attempts: int = 5
    initial_delay: float = 0.5
    multiplier: float = 2.0
    max_delay: float = 30.0
    jitter: float = 0.1
    random_source: Callable[[], float] = field(default=random.random, repr=False, compare=False)

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.initial_delay < 0 or self.max_delay < 0:
            raise ValueError("delays must be non-negative")
        if self.multiplier < 1:
            raise ValueError("multiplier must be >= 1")
        if not 0.0 <= self.jitter <= 1.0:
            raise ValueError("jitter must be within [0, 1]")

    @classmethod
    def immediate(cls, max_attempts: int = 3) -> RetryPolicy:
        """Policy that retries without sleeping (handy for tests and batch tools)."""
        return cls(max_attempts=max_attempts, initial_delay=0.0, max_delay=0.0, jitter=0.0)

    def should_retry(self, attempts: int) -> bool:
        """Return True while ``attempts`` made so far leaves budget for another one."""
        return attempts < self.max_attempts

    def delay_for(self, attempts: int) -> float:
        """Seconds to wait after the ``attempts``-th failed attempt."""
        if attempts < 1:
            return 0.0
        base = min(self.initial_delay * (self.multiplier ** (attempts - 1)), self.max_delay)
        if self.jitter:
            base *= 1.0 - self.jitter * self.random_source()
        return max(0.0, base)
