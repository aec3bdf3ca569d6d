"""
Card Price Engine — Rate Limiter
─────────────────────────────────
Token bucket shared by every upstream call regardless of key, plus a
semaphore bounding how many provider requests are open at once.

  Scrydex:  60 req/min sustained, burst of 5  (see config)

Waiters reserve their token before sleeping, so N concurrent callers
are spaced 1/rate apart instead of all waking at the same instant.
"""

import asyncio
import logging
import time

log = logging.getLogger("pe.rate_limiter")


class TokenBucket:
    """Token bucket: refills at `rate` tokens/second up to `capacity`."""

    def __init__(self, capacity: float, rate: float):
        if capacity <= 0 or rate <= 0:
            raise ValueError("capacity and rate must be positive")
        self.capacity  = capacity
        self.rate      = rate       # tokens per second
        self._tokens   = capacity
        self._last     = time.monotonic()
        self._lock     = asyncio.Lock()
        self.waited_s  = 0.0

    @classmethod
    def per_minute(cls, requests_per_minute: float, burst: float = 1.0) -> "TokenBucket":
        return cls(capacity=burst, rate=requests_per_minute / 60.0)

    async def acquire(self, tokens: float = 1.0) -> float:
        """
        Reserve tokens. Returns wait time in seconds (0 if immediate).
        The reservation is taken now; the caller must sleep for the
        returned time before using it.
        """
        async with self._lock:
            now = time.monotonic()
            elapsed = now - self._last
            self._tokens = min(self.capacity, self._tokens + elapsed * self.rate)
            self._last   = now

            self._tokens -= tokens
            if self._tokens >= 0:
                return 0.0
            return -self._tokens / self.rate

    async def wait(self, tokens: float = 1.0):
        """Acquire and sleep if needed."""
        wait = await self.acquire(tokens)
        if wait > 0:
            log.debug(f"Rate limit: sleeping {wait:.2f}s")
            self.waited_s += wait
            await asyncio.sleep(wait)

    def drain(self):
        """Empty the bucket, e.g. after the provider reported a rate limit."""
        self._tokens = min(self._tokens, 0.0)
        self._last   = time.monotonic()

    @property
    def available(self) -> float:
        elapsed = time.monotonic() - self._last
        return min(self.capacity, self._tokens + elapsed * self.rate)


class ConcurrencyLimiter:
    """Semaphore limiting parallel upstream requests to avoid pile-on."""

    def __init__(self, max_concurrent: int = 4):
        self.max_concurrent = max_concurrent
        self._sem = asyncio.Semaphore(max_concurrent)
        self.active = 0

    async def __aenter__(self):
        await self._sem.acquire()
        self.active += 1
        return self

    async def __aexit__(self, *args):
        self.active -= 1
        self._sem.release()
