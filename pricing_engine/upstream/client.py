"""
Card Price Engine — Rate-Limited Upstream Client
─────────────────────────────────────────────────
The only component that talks to the pricing provider.

  fetch_batch(keys) → BatchResult(records, failed)

Every request passes through one shared token bucket and a concurrency
cap. Batches larger than batch_size are refused: chunking is the
caller's job. A key the provider cannot price is reported in `failed`
and never aborts the rest of the batch.

On a provider rate limit the bucket is drained and the request retried
with exponential backoff plus jitter. Once retries are exhausted the
RateLimited error is raised so callers (the sync scheduler above all)
can stop instead of hammering the provider.
"""

import asyncio
import logging
import random
import time
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from pricing_engine import config
from pricing_engine.errors import RateLimited, UpstreamTimeout
from pricing_engine.models.price_record import PriceRecord
from pricing_engine.orchestrator.rate_limiter import ConcurrencyLimiter, TokenBucket
from pricing_engine.upstream.providers import PricingProvider

log = logging.getLogger("pe.upstream")


@dataclass
class BatchResult:
    records: Dict[str, PriceRecord] = field(default_factory=dict)
    failed:  List[str] = field(default_factory=list)


class RateLimitedUpstreamClient:

    def __init__(self, provider: PricingProvider,
                 bucket: Optional[TokenBucket] = None,
                 max_concurrent: int = config.MAX_CONCURRENT_UPSTREAM,
                 batch_size: int = config.BATCH_SIZE,
                 max_retries: int = config.UPSTREAM_MAX_RETRIES,
                 backoff_base_s: float = config.BACKOFF_BASE_S,
                 backoff_max_s: float = config.BACKOFF_MAX_S,
                 request_timeout_s: Optional[float] = None):
        if batch_size <= 0:
            raise ValueError("batch_size must be positive")
        self.provider        = provider
        self.bucket          = bucket or TokenBucket.per_minute(config.REQUESTS_PER_MINUTE, config.RATE_BURST)
        self.limiter         = ConcurrencyLimiter(max_concurrent)
        self.batch_size      = batch_size
        self.max_retries     = max_retries
        self.backoff_base_s  = backoff_base_s
        self.backoff_max_s   = backoff_max_s
        self.request_timeout = request_timeout_s

        self.requests          = 0
        self.keys_requested    = 0
        self.keys_returned     = 0
        self.keys_failed       = 0
        self.rate_limit_hits   = 0
        self.backoff_s         = 0.0
        self.last_rate_limited_at: Optional[float] = None

    def chunk(self, keys: List[str]) -> List[List[str]]:
        """Split keys into provider-sized batches, preserving order."""
        keys = list(dict.fromkeys(keys))
        return [keys[i : i + self.batch_size] for i in range(0, len(keys), self.batch_size)]

    def _backoff(self, attempt: int, retry_after: Optional[float]) -> float:
        ceiling = min(self.backoff_max_s, self.backoff_base_s * (2 ** attempt))
        delay = random.uniform(ceiling / 2, ceiling)
        if retry_after is not None:
            delay = max(delay, min(retry_after, self.backoff_max_s))
        return delay

    async def _request(self, keys: List[str]):
        async with self.limiter:
            await self.bucket.wait()
            self.requests += 1
            if self.request_timeout is None:
                return await self.provider.fetch_prices(keys)
            try:
                return await asyncio.wait_for(self.provider.fetch_prices(keys), self.request_timeout)
            except asyncio.TimeoutError as e:
                raise UpstreamTimeout(f"{self.provider.name}: no answer in {self.request_timeout}s") from e

    async def fetch_batch(self, keys: List[str]) -> BatchResult:
        keys = list(dict.fromkeys(keys))
        if not keys:
            return BatchResult()
        if len(keys) > self.batch_size:
            raise ValueError(f"batch of {len(keys)} exceeds cap of {self.batch_size}; chunk first")

        attempt = 0
        while True:
            try:
                response = await self._request(keys)
                break
            except RateLimited as e:
                self.rate_limit_hits += 1
                self.last_rate_limited_at = time.time()
                self.bucket.drain()
                if attempt >= self.max_retries:
                    log.warning(f"{self.provider.name}: rate limited, giving up after {attempt + 1} attempts")
                    raise
                delay = self._backoff(attempt, e.retry_after)
                self.backoff_s += delay
                log.warning(f"{self.provider.name}: rate limited — backing off {delay:.1f}s "
                            f"(attempt {attempt + 1}/{self.max_retries + 1})")
                await asyncio.sleep(delay)
                attempt += 1

        wanted  = set(keys)
        records = {k: r for k, r in response.records.items() if k in wanted and r.item_key == k}
        failed  = [k for k in keys if k not in records]

        self.keys_requested += len(keys)
        self.keys_returned  += len(records)
        self.keys_failed    += len(failed)
        log.debug(f"{self.provider.name}: batch of {len(keys)} → {len(records)} ok, {len(failed)} failed")
        return BatchResult(records=records, failed=failed)

    def stats(self) -> dict:
        return {
            "provider":             self.provider.name,
            "requests":             self.requests,
            "keys_requested":       self.keys_requested,
            "keys_returned":        self.keys_returned,
            "keys_failed":          self.keys_failed,
            "rate_limit_hits":      self.rate_limit_hits,
            "backoff_s":            round(self.backoff_s, 2),
            "rate_wait_s":          round(self.bucket.waited_s, 2),
            "last_rate_limited_at": self.last_rate_limited_at,
            "active_requests":      self.limiter.active,
        }

    async def close(self):
        await self.provider.close()
