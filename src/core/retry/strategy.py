"""
Exponential Backoff Retry Strategy

Pure retry decisions shared by the outbox and the poison channel. No I/O;
deterministic when given a seeded random source.
"""

import logging
import random
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetryContext:
    """Inputs to a single retry decision. Built fresh per evaluation."""
    correlation_id: str
    current_retry_count: int
    max_retry_attempts: int


class ExponentialBackoffRetryStrategy:
    """
    Exponential backoff with optional multiplicative jitter.

    delay = base ** (current_retry_count + 1) * unit

    A message on its first observed failure (count 0) already waits base**1
    units. With jitter, the delay is scaled by a factor drawn from
    [1.0, 1.0 + max_jitter_percentage). `max_delay` caps the result.
    """

    def __init__(
        self,
        base: float = 2.0,
        unit: timedelta = timedelta(minutes=1),
        use_jitter: bool = False,
        max_jitter_percentage: float = 0.3,
        max_delay: Optional[timedelta] = None,
        rng: Optional[random.Random] = None
    ):
        if base <= 1.0:
            raise ValueError("base must be greater than 1.0")
        if not 0.0 <= max_jitter_percentage <= 1.0:
            raise ValueError("max_jitter_percentage must be within [0, 1]")
        self.base = base
        self.unit = unit
        self.use_jitter = use_jitter
        self.max_jitter_percentage = max_jitter_percentage
        self.max_delay = max_delay
        self._rng = rng or random.Random()

    def should_retry(self, context: RetryContext) -> bool:
        return context.current_retry_count < context.max_retry_attempts

    def calculate_next_delay(self, context: RetryContext) -> timedelta:
        multiplier = self.base ** (context.current_retry_count + 1)

        if self.use_jitter:
            multiplier *= 1.0 + self._rng.random() * self.max_jitter_percentage

        delay = self.unit * multiplier
        if self.max_delay is not None and delay > self.max_delay:
            delay = self.max_delay

        logger.debug(
            "Calculated retry delay: correlation=%s retry=%s max=%s delay=%.2fs",
            context.correlation_id,
            context.current_retry_count,
            context.max_retry_attempts,
            delay.total_seconds()
        )
        return delay
