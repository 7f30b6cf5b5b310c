from __future__ import annotations

import random
from typing import Optional


class BackoffStrategy:
    """Exponential backoff for retry delays.

    Computes the sleep before the next attempt as base * 2^(attempt-1),
    optionally capped and with proportional jitter. Jitter is off by
    default so the delay sequence is exact."""

    def __init__(
        self,
        base_seconds: float = 1.0,
        max_seconds: Optional[float] = None,
        jitter_ratio: float = 0.0,
    ) -> None:
        if base_seconds < 0:
            raise ValueError("base_seconds must be >= 0")
        self._base = base_seconds
        self._max = max_seconds
        self._jitter = max(0.0, jitter_ratio)

    def get_sleep(self, attempt: int) -> float:
        """Return the delay in seconds after failed attempt number `attempt` (1-based)."""
        exp = self._base * (2 ** max(attempt - 1, 0))
        if self._max is not None:
            exp = min(self._max, exp)
        if self._jitter:
            exp += random.uniform(0, exp * self._jitter)
        return exp
