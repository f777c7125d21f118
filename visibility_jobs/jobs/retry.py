from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
import random


@dataclass(slots=True)
class RetryPolicy:
    base_seconds: float = 5.0
    max_seconds: float = 300.0
    jitter_ratio: float = 0.5
    random_fn: Callable[[float, float], float] = random.uniform

    def delay_seconds(self, attempt: int) -> float:
        """Backoff before the retry that follows ``attempt`` (1-based)."""
        if self.base_seconds <= 0:
            return 0.0
        multiplier = max(0, attempt - 1)
        delay = min(self.base_seconds * (2**multiplier), self.max_seconds)
        if self.jitter_ratio > 0:
            delay *= 1.0 + self.random_fn(0.0, self.jitter_ratio)
        return min(delay, self.max_seconds)
