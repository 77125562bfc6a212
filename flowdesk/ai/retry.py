"""
Backoff policy for outbound model calls.

Delay for attempt ``n`` (0-indexed) is ``initial * 2**n`` plus a random
jitter of up to ``jitter_ratio`` of that value, clamped to ``max_delay``.
Only 5xx, 429 and network-level failures are retried.

The policy carries its own ``sleep`` and ``rand`` callables so tests can
run the retry loop without waiting.
"""

import random
import time
from dataclasses import dataclass, field
from typing import Callable


@dataclass
class RetryPolicy:
    max_retries: int = 3
    initial_delay_ms: int = 1000
    max_delay_ms: int = 10000
    jitter_ratio: float = 0.3
    sleep: Callable[[float], None] = field(default=time.sleep, repr=False)
    rand: Callable[[], float] = field(default=random.random, repr=False)

    @classmethod
    def from_config(cls, config) -> "RetryPolicy":
        return cls(
            max_retries=config.get("AI_MAX_RETRIES", 3),
            initial_delay_ms=config.get("AI_INITIAL_DELAY_MS", 1000),
            max_delay_ms=config.get("AI_MAX_DELAY_MS", 10000),
            jitter_ratio=config.get("AI_JITTER_RATIO", 0.3),
        )

    def compute_delay(self, attempt: int) -> float:
        """Delay in milliseconds before retrying after failed *attempt*."""
        exponential = self.initial_delay_ms * (2 ** attempt)
        jitter = self.rand() * self.jitter_ratio * exponential
        return min(exponential + jitter, self.max_delay_ms)

    @staticmethod
    def should_retry(status_code: int | None = None, network: bool = False) -> bool:
        if network:
            return True
        if status_code is None:
            return False
        return status_code == 429 or status_code >= 500
