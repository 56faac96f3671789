"""Token bucket rate limiter for MangaDex API calls.

MangaDex allows roughly five requests per second per client. All
requests from one process share a limiter so concurrent resolutions do
not trip the 429 responses.
"""

from __future__ import annotations

import asyncio
import time
from typing import Optional


class RateLimiter:
    """Async token bucket.

    Tokens refill continuously at ``requests_per_second`` up to
    ``burst_size``. ``acquire()`` waits until a token is available.

    Example:
        >>> limiter = RateLimiter(requests_per_second=5)
        >>> await limiter.acquire()
    """

    def __init__(self, requests_per_second: float = 5.0, burst_size: Optional[int] = None):
        if requests_per_second <= 0:
            raise ValueError("requests_per_second must be positive")
        self.requests_per_second = requests_per_second
        self.burst_size = burst_size if burst_size is not None else max(1, int(requests_per_second))
        self._tokens = float(self.burst_size)
        self._last_refill = time.monotonic()
        self._lock = asyncio.Lock()

    def _refill(self) -> None:
        now = time.monotonic()
        elapsed = now - self._last_refill
        self._tokens = min(float(self.burst_size), self._tokens + elapsed * self.requests_per_second)
        self._last_refill = now

    @property
    def available_tokens(self) -> float:
        """Tokens available right now (refills as a side effect)."""
        self._refill()
        return self._tokens

    async def acquire(self) -> None:
        """Take one token, sleeping until one is available."""
        async with self._lock:
            while True:
                self._refill()
                if self._tokens >= 1.0:
                    self._tokens -= 1.0
                    return
                deficit = 1.0 - self._tokens
                await asyncio.sleep(deficit / self.requests_per_second)
