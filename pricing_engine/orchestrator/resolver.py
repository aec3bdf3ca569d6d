"""
Card Price Engine — Pricing Orchestrator
─────────────────────────────────────────
The public entry point: "what is this item worth right now?"

    resolve(item_key, priority)       → PriceResult
    resolve_many(item_keys, priority) → {item_key: PriceResult}

Routing by priority:

  speed      cache → store. Never waits on the network. Stale values are
             served and refreshed in the background; unknown items come
             back unavailable with a background fetch already started.
  balanced   as speed, but a truly unknown item (cache and store miss)
             is fetched upstream synchronously. Expired values are
             served flagged EXPIRED while a refresh runs.
  freshness  anything not Fresh is refreshed synchronously. Concurrent
             callers share one refresh through the key's refresh slot.
             When the deadline passes the best known value is returned.

Every call is bounded by its priority's timeout. Price unavailability is
data (state=unavailable / expired), never an exception; the only error
that escapes is ConfigurationError.
"""

import asyncio
import logging
import time
from collections import Counter
from typing import Dict, Iterable, List, Optional, Set, Tuple, Union

from pricing_engine import config
from pricing_engine.cache.memory_cache import InMemoryPriceCache, RefreshOutcome
from pricing_engine.cache.staleness import StalenessPolicy
from pricing_engine.errors import ConfigurationError, StoreUnavailable, UpstreamError
from pricing_engine.models.price_record import (
    PriceRecord, PriceResult, PriceState, Priority, SourceTier,
)
from pricing_engine.orchestrator.revalidator import BackgroundRevalidator
from pricing_engine.store.base import PersistentPriceStore
from pricing_engine.upstream.client import RateLimitedUpstreamClient

log = logging.getLogger("pe.resolver")

Fallback = Tuple[Optional[PriceRecord], Optional[SourceTier]]


def coerce_priority(value: Union[Priority, str, None]) -> Priority:
    if value is None:
        return Priority.BALANCED
    if isinstance(value, Priority):
        return value
    try:
        return Priority(str(value).strip().lower())
    except ValueError:
        choices = ", ".join(p.value for p in Priority)
        raise ValueError(f"Unknown priority {value!r} (expected one of: {choices})")


class PricingOrchestrator:

    def __init__(self, cache: InMemoryPriceCache,
                 store: PersistentPriceStore,
                 client: RateLimitedUpstreamClient,
                 revalidator: BackgroundRevalidator,
                 policy: Optional[StalenessPolicy] = None,
                 timeouts: Optional[Dict[Priority, float]] = None):
        self.cache       = cache
        self.store       = store
        self.client      = client
        self.revalidator = revalidator
        self.policy      = policy or cache.policy
        self.timeouts    = dict(config.RESOLVE_TIMEOUTS)
        self.timeouts.update(timeouts or {})

        self._routes = {
            Priority.SPEED:     self._resolve_cached,
            Priority.BALANCED:  self._resolve_cached,
            Priority.FRESHNESS: self._resolve_fresh,
        }
        missing = set(Priority) - set(self._routes)
        if missing:
            raise ConfigurationError(f"No route for priorities {sorted(p.value for p in missing)}")

        self._tasks: Set[asyncio.Task] = set()
        self.served: Counter = Counter()
        self.store_errors      = 0
        self.store_timeouts    = 0
        self.upstream_timeouts = 0
        self.sync_fetches      = 0

    # ── Public API ────────────────────────────────────────────

    async def resolve(self, item_key: str,
                      priority: Union[Priority, str] = Priority.BALANCED) -> PriceResult:
        priority = coerce_priority(priority)
        key = _clean_key(item_key)
        deadline = time.monotonic() + self.timeouts[priority]
        result = await self._routes[priority](key, priority, deadline)
        self._count(result)
        return result

    async def resolve_many(self, item_keys: Iterable[str],
                           priority: Union[Priority, str] = Priority.BALANCED) -> Dict[str, PriceResult]:
        priority = coerce_priority(priority)
        keys = list(dict.fromkeys(_clean_key(k) for k in item_keys))
        if not keys:
            return {}
        deadline = time.monotonic() + self.timeouts[priority]

        results: Dict[str, PriceResult] = {}
        cached: Dict[str, PriceRecord] = {}
        lookup: List[str] = []

        for key in keys:
            entry = self.cache.get(key)
            if entry is None:
                lookup.append(key)
                continue
            state = self.policy.classify_record(entry.record, priority)
            if state is PriceState.FRESH or (priority is not Priority.FRESHNESS
                                             and state is PriceState.STALE):
                results[key] = self._served(key, entry.record, state, SourceTier.CACHE)
            else:
                cached[key] = entry.record
                lookup.append(key)

        stored, store_ok = await self._read_store_many(lookup, deadline)

        fetch: Dict[str, Fallback] = {}
        for key in lookup:
            record, tier = self._newest(key, cached.get(key), stored.get(key))
            if record is None:
                if priority is Priority.SPEED or (not store_ok and priority is not Priority.FRESHNESS):
                    results[key] = PriceResult.unavailable(key, refreshing=store_ok and self._kick(key))
                else:
                    fetch[key] = (None, None)
                continue
            state = self.policy.classify_record(record, priority)
            if priority is Priority.FRESHNESS and state is not PriceState.FRESH:
                fetch[key] = (record, tier)
                continue
            results[key] = self._served(key, record, state, tier)

        if fetch:
            self.sync_fetches += len(fetch)
            futures = self._start_refresh(list(fetch))
            waiting = [f for f in futures.values() if not f.done()]
            remaining = self._remaining(deadline)
            if waiting and remaining > 0:
                await asyncio.wait(waiting, timeout=remaining)
            for key, (record, tier) in fetch.items():
                fut = futures[key]
                outcome = fut.result() if fut.done() else None
                results[key] = self._settle(key, priority, outcome, record, tier)

        for result in results.values():
            self._count(result)
        return {k: results[k] for k in keys}

    # ── Routes ────────────────────────────────────────────────

    async def _resolve_cached(self, key: str, priority: Priority, deadline: float) -> PriceResult:
        """speed / balanced: serve what we have, refresh behind the caller."""
        entry = self.cache.get(key)
        cached = entry.record if entry else None
        if cached is not None:
            state = self.policy.classify_record(cached, priority)
            if state is not PriceState.EXPIRED:
                return self._served(key, cached, state, SourceTier.CACHE)

        stored, store_ok = await self._read_store(key, deadline)
        record, tier = self._newest(key, cached, stored)

        if record is not None:
            state = self.policy.classify_record(record, priority)
            return self._served(key, record, state, tier)

        if priority is Priority.BALANCED and store_ok:
            return await self._fetch_now(key, priority, deadline, (None, None))

        return PriceResult.unavailable(key, refreshing=store_ok and self._kick(key))

    async def _resolve_fresh(self, key: str, priority: Priority, deadline: float) -> PriceResult:
        """freshness: anything not Fresh waits for a (shared) upstream refresh."""
        entry = self.cache.get(key)
        cached = entry.record if entry else None
        if cached is not None and self.policy.classify_record(cached, priority) is PriceState.FRESH:
            return self._served(key, cached, PriceState.FRESH, SourceTier.CACHE)

        stored, _ = await self._read_store(key, deadline)
        record, tier = self._newest(key, cached, stored)
        if record is not None and self.policy.classify_record(record, priority) is PriceState.FRESH:
            return self._served(key, record, PriceState.FRESH, tier)

        return await self._fetch_now(key, priority, deadline, (record, tier))

    # ── Helpers ───────────────────────────────────────────────

    def _served(self, key: str, record: PriceRecord, state: PriceState,
                tier: Optional[SourceTier]) -> PriceResult:
        """Result for a value served as-is; anything not Fresh gets a background refresh."""
        refreshing = state is not PriceState.FRESH and self._kick(key)
        return _result(key, record, state, tier, refreshing)

    def _newest(self, key: str, cached: Optional[PriceRecord],
                stored: Optional[PriceRecord]) -> Fallback:
        if stored is not None and stored.is_newer_than(cached):
            self.cache.put(key, stored)
            return stored, SourceTier.STORE
        if cached is not None:
            return cached, SourceTier.CACHE
        return None, None

    def _kick(self, key: str) -> bool:
        """Make sure a background refresh is running for key. True if one is."""
        granted, _ = self.cache.acquire_refresh_slot(key)
        if not granted:
            return True
        return self.revalidator.schedule(key)

    async def _fetch_now(self, key: str, priority: Priority, deadline: float,
                         fallback: Fallback) -> PriceResult:
        # A refresh may have landed while this caller was reading the store.
        latest = self.cache.peek(key)
        if (latest is not None and latest.is_newer_than(fallback[0])
                and self.policy.classify_record(latest, priority) is PriceState.FRESH):
            return _result(key, latest, PriceState.FRESH, SourceTier.CACHE, refreshing=False)

        self.sync_fetches += 1
        fut = self._start_refresh([key])[key]
        outcome = await self._await_outcome(fut, deadline)
        return self._settle(key, priority, outcome, *fallback)

    def _settle(self, key: str, priority: Priority, outcome: Optional[RefreshOutcome],
                record: Optional[PriceRecord], tier: Optional[SourceTier]) -> PriceResult:
        if outcome is not None and isinstance(outcome.error, ConfigurationError):
            raise outcome.error

        timed_out = outcome is None
        if timed_out:
            self.upstream_timeouts += 1
            log.debug(f"{key}: refresh still running at deadline, serving best known value")

        if outcome is not None and outcome.record is not None and outcome.record.is_newer_than(record):
            record = outcome.record
            tier = SourceTier.UPSTREAM if outcome.updated else SourceTier.CACHE

        if record is None:
            return PriceResult.unavailable(key, refreshing=timed_out)
        state = self.policy.classify_record(record, priority)
        return _result(key, record, state, tier, refreshing=timed_out)

    def _start_refresh(self, keys: List[str]) -> Dict[str, asyncio.Future]:
        """
        Acquire refresh slots for keys. Keys already refreshing are joined;
        the rest are fetched in provider-sized batches by tasks that outlive
        the caller's deadline.
        """
        futures: Dict[str, asyncio.Future] = {}
        granted: List[str] = []
        for key in keys:
            ok, fut = self.cache.acquire_refresh_slot(key)
            futures[key] = fut
            if ok:
                granted.append(key)
        for chunk in self.client.chunk(granted):
            task = asyncio.create_task(self._fetch_and_release(chunk), name=f"fetch:{chunk[0]}")
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
        return futures

    async def _fetch_and_release(self, keys: List[str]):
        fetched: Dict[str, PriceRecord] = {}
        error: Optional[BaseException] = None
        try:
            batch = await self.client.fetch_batch(keys)
            for key in keys:
                record = batch.records.get(key)
                if record is None:
                    continue
                try:
                    await self.store.upsert(record)
                except StoreUnavailable as e:
                    log.warning(f"{key}: fetched price not persisted ({e})")
                fetched[key] = record
        except Exception as e:
            error = e
            log.warning(f"Synchronous fetch of {len(keys)} keys failed: {e}")
        finally:
            for key in keys:
                if key in fetched:
                    self.cache.release_refresh_slot(key, record=fetched[key])
                else:
                    self.cache.release_refresh_slot(
                        key, error=error or UpstreamError(f"{key}: no price from provider"))

    async def _await_outcome(self, fut: asyncio.Future, deadline: float) -> Optional[RefreshOutcome]:
        if fut.done():
            return fut.result()
        remaining = self._remaining(deadline)
        if remaining <= 0:
            return None
        try:
            return await asyncio.wait_for(asyncio.shield(fut), remaining)
        except asyncio.TimeoutError:
            return None

    async def _read_store(self, key: str, deadline: float) -> Tuple[Optional[PriceRecord], bool]:
        found, ok = await self._read_store_many([key], deadline)
        return found.get(key), ok

    async def _read_store_many(self, keys: List[str],
                               deadline: float) -> Tuple[Dict[str, PriceRecord], bool]:
        if not keys:
            return {}, True
        try:
            if len(keys) == 1:
                record = await asyncio.wait_for(self.store.get_by_key(keys[0]), self._remaining(deadline))
                return ({keys[0]: record} if record is not None else {}), True
            return await asyncio.wait_for(self.store.get_many(keys), self._remaining(deadline)), True
        except asyncio.TimeoutError:
            self.store_timeouts += 1
            log.warning(f"Store read timed out for {len(keys)} keys — serving from memory only")
        except StoreUnavailable as e:
            self.store_errors += 1
            log.warning(f"Store unavailable ({e}) — serving from memory only")
        return {}, False

    @staticmethod
    def _remaining(deadline: float) -> float:
        return max(0.0, deadline - time.monotonic())

    def _count(self, result: PriceResult):
        self.served[result.state.value] += 1
        if result.source_tier is not None:
            self.served[result.source_tier.value] += 1

    # ── Lifecycle / observability ─────────────────────────────

    async def drain(self):
        """Wait for synchronous fetches and background revalidations to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
        await self.revalidator.drain()

    async def close(self):
        for task in list(self._tasks):
            task.cancel()
        await asyncio.gather(*list(self._tasks), return_exceptions=True)
        await self.revalidator.close()

    def stats(self) -> dict:
        return {
            "cache":       self.cache.stats(),
            "upstream":    self.client.stats(),
            "revalidator": self.revalidator.stats(),
            "resolver": {
                "served":            dict(self.served),
                "sync_fetches":      self.sync_fetches,
                "upstream_timeouts": self.upstream_timeouts,
                "store_errors":      self.store_errors,
                "store_timeouts":    self.store_timeouts,
                "in_flight":         len(self._tasks),
            },
        }


def _clean_key(item_key: str) -> str:
    key = (item_key or "").strip()
    if not key:
        raise ValueError("item_key must be a non-empty string")
    return key


def _result(key: str, record: PriceRecord, state: PriceState,
            tier: Optional[SourceTier], refreshing: bool) -> PriceResult:
    return PriceResult(
        item_key=key,
        record=record.with_tier(tier) if tier else record,
        state=state,
        source_tier=tier,
        refreshing=refreshing,
        age_s=record.age_seconds(),
    )
