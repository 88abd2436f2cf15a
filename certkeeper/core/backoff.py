"""
Exponential backoff with full jitter for failed renewals.
"""

import random


class BackoffPolicy:
    """
    Retry delays for consecutive failures of one domain set.

    The ceiling doubles from `base` with each failure and is capped at
    `cap`. With jitter enabled the actual delay is drawn uniformly from
    [0, ceiling].
    """

    def __init__(self, base: float, cap: float, jitter: bool = True, rng: random.Random | None = None):
        if base <= 0:
            raise ValueError("base delay must be positive")
        if cap < base:
            raise ValueError("cap must not be smaller than the base delay")
        self.base = base
        self.cap = cap
        self.jitter = jitter
        self._rng = rng or random.Random()

    def ceiling(self, failures: int) -> float:
        """Largest delay after `failures` consecutive failures (1-based)."""
        if failures < 1:
            return 0.0
        # Cap the exponent so huge failure counts don't overflow
        exponent = min(failures - 1, 63)
        return min(self.cap, self.base * (2**exponent))

    def delay(self, failures: int) -> float:
        """Seconds to wait before the next attempt."""
        ceiling = self.ceiling(failures)
        if not self.jitter:
            return ceiling
        return self._rng.uniform(0, ceiling)
