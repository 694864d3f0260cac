# Copyright (c) Syntropy Systems
"""Retry policy for provider calls."""
from __future__ import annotations

import random
from dataclasses import dataclass, field

from sweeplab.errors import ConfigurationError


@dataclass(frozen=True)
class RetryPolicy:
    """Exponential backoff with a cap and additive jitter.

    ``attempt`` counts attempts already made, so the delay before the second
    attempt is ``base_delay * 2``, before the third ``base_delay * 4`` and so
    on, never more than ``max_delay`` plus up to ``jitter`` seconds.
    """

    max_attempts: int = 3
    base_delay: float = 0.5
    max_delay: float = 30.0
    jitter: float = 0.25
    rng: random.Random = field(
        default_factory=random.Random, compare=False, repr=False
    )

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            msg = f"max_attempts must be at least 1, got {self.max_attempts}"
            raise ConfigurationError(msg)
        if self.base_delay < 0 or self.max_delay < 0 or self.jitter < 0:
            msg = "Backoff delays and jitter must be non-negative"
            raise ConfigurationError(msg)

    def should_retry(self, attempt: int) -> bool:
        """Whether another attempt is allowed after ``attempt`` attempts."""
        return attempt < self.max_attempts

    def delay(self, attempt: int) -> float:
        """Seconds to wait before the next attempt."""
        backoff = min(self.max_delay, self.base_delay * (2 ** attempt))
        if self.jitter:
            backoff += self.rng.uniform(0, self.jitter)  # noqa: S311
        return backoff

    @classmethod
    def no_delay(cls, max_attempts: int = 3) -> RetryPolicy:
        """Policy that retries immediately, used by tests and dry runs."""
        return cls(max_attempts=max_attempts, base_delay=0.0, max_delay=0.0, jitter=0.0)
