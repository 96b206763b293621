"""Reconnection backoff for node sessions."""

from __future__ import annotations

import random
from dataclasses import dataclass


@dataclass
class BackoffPolicy:
    """Exponential backoff with jitter; retries are unlimited."""

    initial_delay: float = 1.0  # seconds
    factor: float = 2.0
    max_delay: float = 60.0  # seconds
    jitter: bool = True

    def calculate_delay(self, attempt: int) -> float:
        """Delay before retry number ``attempt`` (0-indexed)."""
        delay = self.initial_delay * (self.factor**attempt)
        delay = min(delay, self.max_delay)
        if self.jitter:
            # Up to 25% either way
            delay = delay * (0.75 + random.random() * 0.5)
        return delay
