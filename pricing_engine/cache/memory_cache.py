"""
Card Price Engine — In-Memory Price Cache
──────────────────────────────────────────
Bounded LRU map of item key → CacheEntry, plus the per-key refresh slots
that guarantee at most one upstream/store refresh per key at a time.

All methods are synchronous and never await, so each one is atomic with
respect to the event loop. The refresh slot is an asyncio.Future: the
holder resolves it through release_refresh_slot(), everyone else awaits
it and receives the same RefreshOutcome object.

Eviction only drops the in-memory copy. The persistent store is never
touched from here.
"""

import asyncio
import logging
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Dict, Iterator, Optional, Tuple

from pricing_engine import config
from pricing_engine.cache.staleness import StalenessPolicy
from pricing_engine.models.price_record import PriceRecord, PriceState

log = logging.getLogger("pe.cache")


@dataclass
class CacheEntry:
    record:            PriceRecord
    last_accessed_at:  float
    refresh_in_flight: bool = False


@dataclass
class RefreshOutcome:
    """Shared result of one refresh, handed to the slot holder and every waiter."""
    item_key: str
    record:   Optional[PriceRecord] = None   # best known record after the refresh
    updated:  bool = False                   # the refresh produced a newer record
    error:    Optional[BaseException] = None

    @property
    def ok(self) -> bool:
        return self.error is None


class InMemoryPriceCache:

    def __init__(self, capacity: int = config.CACHE_CAPACITY,
                 policy: Optional[StalenessPolicy] = None):
        if capacity <= 0:
            raise ValueError("capacity must be positive")
        self.capacity = capacity
        self.policy   = policy or StalenessPolicy()
        self._entries: "OrderedDict[str, CacheEntry]" = OrderedDict()
        self._inflight: Dict[str, asyncio.Future] = {}

        self.hits             = 0
        self.misses           = 0
        self.evictions        = 0
        self.dropped_writes   = 0
        self.refresh_failures = 0
        self.last_failures: "OrderedDict[str, str]" = OrderedDict()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: str) -> bool:
        return key in self._entries

    def keys(self) -> Iterator[str]:
        return iter(list(self._entries.keys()))

    # ── Reads / writes ────────────────────────────────────────

    def get(self, key: str) -> Optional[CacheEntry]:
        entry = self._entries.get(key)
        if entry is None:
            self.misses += 1
            return None
        self.hits += 1
        entry.last_accessed_at = time.time()
        self._entries.move_to_end(key)
        return entry

    def peek(self, key: str) -> Optional[PriceRecord]:
        """Record for key without touching recency or hit counters."""
        entry = self._entries.get(key)
        return entry.record if entry else None

    def put(self, key: str, record: PriceRecord, insert: bool = True) -> bool:
        """
        Insert or overwrite key. Returns False when the write was dropped,
        either because the cached record is newer or because insert=False
        and the key is not cached.
        """
        entry = self._entries.get(key)
        if entry is not None:
            if record.fetched_at < entry.record.fetched_at:
                self.dropped_writes += 1
                log.debug(f"{key}: dropped older write ({record.fetched_at} < {entry.record.fetched_at})")
                return False
            entry.record = record
            entry.last_accessed_at = time.time()
            self._entries.move_to_end(key)
            return True

        if not insert:
            return False

        while len(self._entries) >= self.capacity:
            evicted, _ = self._entries.popitem(last=False)
            self.evictions += 1
            log.debug(f"Evicted {evicted} (capacity={self.capacity})")

        self._entries[key] = CacheEntry(
            record=record,
            last_accessed_at=time.time(),
            refresh_in_flight=key in self._inflight,
        )
        return True

    def invalidate(self, key: str) -> bool:
        self.last_failures.pop(key, None)
        return self._entries.pop(key, None) is not None

    def clear(self):
        self._entries.clear()
        self.last_failures.clear()

    # ── Refresh slots ─────────────────────────────────────────

    def acquire_refresh_slot(self, key: str) -> Tuple[bool, asyncio.Future]:
        """
        Atomic check-and-set. Returns (True, future) when the caller now owns
        the refresh for key and must call release_refresh_slot() exactly once.
        Returns (False, future) when a refresh is already running; the caller
        must not fetch and may await the future instead.
        """
        fut = self._inflight.get(key)
        if fut is not None:
            return False, fut
        fut = asyncio.get_running_loop().create_future()
        self._inflight[key] = fut
        entry = self._entries.get(key)
        if entry is not None:
            entry.refresh_in_flight = True
        return True, fut

    def is_refreshing(self, key: str) -> bool:
        return key in self._inflight

    def refresh_future(self, key: str) -> Optional[asyncio.Future]:
        return self._inflight.get(key)

    def release_refresh_slot(self, key: str,
                             record: Optional[PriceRecord] = None,
                             error: Optional[BaseException] = None,
                             insert: bool = True) -> RefreshOutcome:
        """
        Close the refresh for key. A record is written through put() (older
        records are dropped); on error the cached record is left untouched.
        insert=False only updates keys that are already cached.
        """
        fut = self._inflight.pop(key, None)
        previous = self.peek(key)
        updated = False

        if record is not None and error is None:
            written = self.put(key, record, insert=insert)
            updated = written or record.is_newer_than(previous)
            self.last_failures.pop(key, None)
        elif error is not None:
            self.refresh_failures += 1
            self._note_failure(key, error)
            log.warning(f"{key}: refresh failed, keeping cached value ({error})")

        entry = self._entries.get(key)
        if entry is not None:
            entry.refresh_in_flight = False

        best = self.peek(key)
        if record is not None and error is None and record.is_newer_than(best):
            best = record
        outcome = RefreshOutcome(item_key=key, record=best, updated=updated, error=error)

        if fut is None:
            log.warning(f"{key}: release_refresh_slot called without a held slot")
        elif not fut.done():
            fut.set_result(outcome)
        return outcome

    def _note_failure(self, key: str, error: BaseException):
        self.last_failures.pop(key, None)
        self.last_failures[key] = f"{type(error).__name__}: {error}"[:200]
        while len(self.last_failures) > self.capacity:
            self.last_failures.popitem(last=False)

    def refreshes_in_flight(self) -> int:
        return len(self._inflight)

    # ── Observability ─────────────────────────────────────────

    def stats(self) -> dict:
        now = time.time()
        counts = {PriceState.FRESH: 0, PriceState.STALE: 0, PriceState.EXPIRED: 0}
        for entry in self._entries.values():
            counts[self.policy.classify(entry.record.age_seconds(now))] += 1
        return {
            "size":                len(self._entries),
            "capacity":            self.capacity,
            "fresh":               counts[PriceState.FRESH],
            "stale":               counts[PriceState.STALE],
            "expired":             counts[PriceState.EXPIRED],
            "refreshes_in_flight": len(self._inflight),
            "hits":                self.hits,
            "misses":              self.misses,
            "evictions":           self.evictions,
            "dropped_writes":      self.dropped_writes,
            "refresh_failures":    self.refresh_failures,
        }
