"""
Exponential backoff shared by per-event retries and sync cool-downs.
"""

from __future__ import annotations

import random
from dataclasses import dataclass

from shopsavr.config import SYNC_BACKOFF_BASE_SECONDS, SYNC_BACKOFF_MAX_SECONDS
from shopsavr.observability.telemetry import log_event

# Doubling stops here; 2**1024 no longer fits in a float
_MAX_EXPONENT = 62


@dataclass(frozen=True)
class BackoffPolicy:
    """Delay doubles per attempt: base, 2*base, 4*base ... capped at max_delay."""

    stage: str = "sync"
    base_delay: float = SYNC_BACKOFF_BASE_SECONDS
    max_delay: float = SYNC_BACKOFF_MAX_SECONDS
    jitter: float = 0.0

    def delay_for(self, attempt: int) -> float:
        """Seconds to wait after the ``attempt``-th failure (1-based)."""
        if attempt < 1:
            return 0.0
        exponent = min(attempt - 1, _MAX_EXPONENT)
        delay = min(self.base_delay * (2**exponent), self.max_delay)
        if self.jitter:
            delay += random.uniform(0, self.jitter)
        return delay

    def schedule(self, attempt: int, now: float) -> float:
        """Absolute timestamp at which the next attempt becomes eligible."""
        delay = self.delay_for(attempt)
        log_event("retry_scheduled", stage=self.stage, attempt=attempt, delay=round(delay, 3))
        return now + delay
