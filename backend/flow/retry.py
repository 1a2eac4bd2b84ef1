"""
Retry policies for per-deal sync work.

The retry budget is SyncOptions.max_retries (retries after the first attempt,
so at most max_retries + 1 attempts). A policy only decides how long to wait
before each retry, so it can be swapped without touching the budget.
"""

import random
from dataclasses import dataclass


class RetryPolicy:

    def delay_for(self, retry_number: int) -> float:
        """Seconds to wait before retry `retry_number` (1-based)."""
        raise NotImplementedError


@dataclass
class FixedRetryPolicy(RetryPolicy):
    delay_seconds: float = 0.0

    def delay_for(self, retry_number: int) -> float:
        return self.delay_seconds


@dataclass
class ExponentialBackoffPolicy(RetryPolicy):
    base_seconds: float = 1.0
    max_seconds: float = 30.0
    jitter: bool = False

    def delay_for(self, retry_number: int) -> float:
        delay = min(self.max_seconds, self.base_seconds * (2 ** (retry_number - 1)))
        if self.jitter:
            delay = random.uniform(0, delay)
        return delay
