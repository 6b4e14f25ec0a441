from __future__ import annotations

import asyncio
import time
from typing import Callable


class RateLimiter:
    """
    Token bucket. `acquire()` waits until a token is available, so callers
    are spaced proactively instead of retrying after a 429.
    """
    def __init__(self, rate_per_sec: float, burst: int = 1, clock: Callable[[], float] = time.monotonic):
        if rate_per_sec <= 0:
            raise ValueError("rate_per_sec must be positive")
        self.rate = float(rate_per_sec)
        self.capacity = max(1, int(burst))
        self.tokens = float(self.capacity)
        self._clock = clock
        self.updated = clock()
        self._lock = asyncio.Lock()

    def _refill(self) -> None:
        now = self._clock()
        self.tokens = min(self.capacity, self.tokens + (now - self.updated) * self.rate)
        self.updated = now

    async def acquire(self) -> None:
        async with self._lock:
            self._refill()
            # wait if no token
            if self.tokens < 1.0:
                await asyncio.sleep((1.0 - self.tokens) / self.rate)
                self._refill()
                self.tokens = max(self.tokens, 1.0)
            self.tokens -= 1.0
