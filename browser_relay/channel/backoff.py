"""Exponential backoff for reconnect attempts."""

import random
from dataclasses import dataclass
from typing import Optional


@dataclass
class BackoffState:
    """State tracking for exponential backoff between reconnects."""
    base_delay: float = 1.0
    max_delay: float = 30.0
    jitter: bool = True
    consecutive_failures: int = 0
    last_reason: Optional[str] = None

    def record_failure(self, reason: Optional[str] = None) -> float:
        """Count a failure and return the delay before the next attempt."""
        self.consecutive_failures += 1
        self.last_reason = reason
        return self.calculate_delay()

    def reset(self) -> None:
        self.consecutive_failures = 0
        self.last_reason = None

    def calculate_delay(self) -> float:
        """Calculate the next backoff delay."""
        if self.consecutive_failures == 0:
            return 0.0

        # Exponential backoff: base_delay * 2^(failures-1)
        delay = self.base_delay * (2 ** min(self.consecutive_failures - 1, 32))
        delay = min(delay, self.max_delay)

        if self.jitter:
            # Add ±10% jitter, never exceeding the cap
            jitter_range = delay * 0.1
            delay += random.uniform(-jitter_range, jitter_range)
            delay = min(delay, self.max_delay)

        return max(0.0, delay)
