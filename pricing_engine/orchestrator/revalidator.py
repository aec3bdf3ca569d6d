"""
Card Price Engine — Background Revalidator
───────────────────────────────────────────
Fire-and-forget refresh for Stale reads.

The orchestrator acquires the key's refresh slot, hands the key over via
schedule() and returns the stale value to its caller straight away. The
revalidation task then:

  1. re-reads the persistent store (another process may have refreshed it)
  2. if the stored record is still not Fresh, fetches that one key upstream
  3. writes the new record to the store
  4. releases the slot, which writes through to the cache

Each task has its own error boundary. A failure is logged and recorded on
the cache; it never reaches the read that triggered it, which has already
returned. Caller timeouts never cancel these tasks.
"""

import asyncio
import logging
from typing import Optional, Set

from pricing_engine import config
from pricing_engine.cache.memory_cache import InMemoryPriceCache
from pricing_engine.cache.staleness import StalenessPolicy
from pricing_engine.errors import StoreUnavailable, UpstreamError, UpstreamTimeout
from pricing_engine.models.price_record import PriceRecord, PriceState
from pricing_engine.store.base import PersistentPriceStore
from pricing_engine.upstream.client import RateLimitedUpstreamClient

log = logging.getLogger("pe.revalidator")


class BackgroundRevalidator:

    def __init__(self, cache: InMemoryPriceCache,
                 store: PersistentPriceStore,
                 client: RateLimitedUpstreamClient,
                 policy: Optional[StalenessPolicy] = None,
                 max_concurrent: int = config.REVALIDATE_CONCURRENCY,
                 max_pending: int = config.REVALIDATE_MAX_PENDING,
                 timeout_s: float = config.REVALIDATE_TIMEOUT_S):
        self.cache       = cache
        self.store       = store
        self.client      = client
        self.policy      = policy or cache.policy
        self.max_pending = max_pending
        self.timeout_s   = timeout_s
        self._sem        = asyncio.Semaphore(max_concurrent)
        self._tasks: Set[asyncio.Task] = set()

        self.scheduled   = 0
        self.refreshed   = 0
        self.from_store  = 0
        self.failed      = 0
        self.rejected    = 0

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def schedule(self, key: str) -> bool:
        """
        Take over the refresh slot the caller already holds for key and
        return immediately. The slot is always released, even when the
        work is rejected because the pool is full.
        """
        if len(self._tasks) >= self.max_pending:
            self.rejected += 1
            log.warning(f"{key}: revalidation rejected — {len(self._tasks)} already pending")
            self.cache.release_refresh_slot(key)
            return False

        self.scheduled += 1
        task = asyncio.create_task(self._run(key), name=f"revalidate:{key}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return True

    async def _run(self, key: str):
        record: Optional[PriceRecord] = None
        error: Optional[BaseException] = None
        try:
            async with self._sem:
                record = await asyncio.wait_for(self._refresh(key), self.timeout_s)
        except asyncio.TimeoutError:
            error = UpstreamTimeout(f"revalidation exceeded {self.timeout_s}s")
        except Exception as e:
            error = e
        finally:
            if error is not None:
                self.failed += 1
                log.warning(f"{key}: background revalidation failed — {error}")
            self.cache.release_refresh_slot(key, record=record, error=error)

    async def _refresh(self, key: str) -> PriceRecord:
        cached = self.cache.peek(key)

        stored: Optional[PriceRecord] = None
        try:
            stored = await self.store.get_by_key(key)
        except StoreUnavailable as e:
            log.warning(f"{key}: store unavailable during revalidation ({e})")

        fallback = stored if stored is not None and stored.is_newer_than(cached) else None
        if fallback is not None and self.policy.classify_record(fallback) is PriceState.FRESH:
            self.from_store += 1
            log.debug(f"{key}: store already fresh, skipping upstream")
            return fallback

        try:
            result = await self.client.fetch_batch([key])
            record = result.records.get(key)
            if record is None:
                raise UpstreamError(f"{key}: provider returned no price")
        except UpstreamError as e:
            if fallback is None:
                raise
            self.failed += 1
            log.warning(f"{key}: upstream failed ({e}); using newer stored record")
            return fallback

        try:
            await self.store.upsert(record)
        except StoreUnavailable as e:
            log.warning(f"{key}: refreshed price not persisted ({e})")

        self.refreshed += 1
        return record

    async def drain(self):
        """Wait for every scheduled revalidation, including ones scheduled meanwhile."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def close(self):
        for task in list(self._tasks):
            task.cancel()
        await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def stats(self) -> dict:
        return {
            "pending":    len(self._tasks),
            "scheduled":  self.scheduled,
            "refreshed":  self.refreshed,
            "from_store": self.from_store,
            "failed":     self.failed,
            "rejected":   self.rejected,
        }
