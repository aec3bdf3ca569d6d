"""Tests for the LRU price cache and its per-key refresh slots."""

import asyncio

import pytest

from pricing_engine.cache.memory_cache import InMemoryPriceCache
from pricing_engine.errors import UpstreamError
from tests.helpers.fake_provider import HOUR, make_record


def test_lru_evicts_least_recently_used():
    cache = InMemoryPriceCache(capacity=2)
    cache.put("a", make_record("a"))
    cache.put("b", make_record("b"))
    assert cache.get("a") is not None       # a is now most recent
    cache.put("c", make_record("c"))

    assert "b" not in cache
    assert "a" in cache and "c" in cache
    assert len(cache) == 2
    assert cache.evictions == 1


def test_older_write_never_replaces_newer():
    cache = InMemoryPriceCache(capacity=10)
    newer = make_record("a", age_s=0, price=12.0)
    older = make_record("a", age_s=HOUR, price=9.0)

    assert cache.put("a", newer)
    assert cache.put("a", older) is False
    assert cache.peek("a").fetched_at == newer.fetched_at
    assert cache.dropped_writes == 1


def test_insert_false_only_updates_cached_keys():
    cache = InMemoryPriceCache(capacity=10)
    assert cache.put("a", make_record("a"), insert=False) is False
    assert "a" not in cache

    cache.put("b", make_record("b", age_s=HOUR))
    assert cache.put("b", make_record("b"), insert=False)
    assert cache.peek("b").age_seconds() < 60


def test_peek_does_not_touch_recency_or_counters():
    cache = InMemoryPriceCache(capacity=2)
    cache.put("a", make_record("a"))
    cache.put("b", make_record("b"))
    cache.peek("a")
    cache.put("c", make_record("c"))

    assert "a" not in cache
    assert cache.hits == 0 and cache.misses == 0


@pytest.mark.asyncio
async def test_second_acquire_joins_the_first_refresh():
    cache = InMemoryPriceCache(capacity=10)
    cache.put("a", make_record("a", age_s=3 * HOUR))

    granted, fut = cache.acquire_refresh_slot("a")
    again, same = cache.acquire_refresh_slot("a")
    assert granted is True
    assert again is False
    assert same is fut
    assert cache.get("a").refresh_in_flight

    waiter = asyncio.ensure_future(asyncio.shield(same))
    outcome = cache.release_refresh_slot("a", record=make_record("a", price=30.0))

    assert await waiter is outcome
    assert fut.result() is outcome
    assert outcome.ok and outcome.updated
    assert outcome.record.raw_price == 30.0
    assert not cache.is_refreshing("a")
    assert not cache.get("a").refresh_in_flight


@pytest.mark.asyncio
async def test_failed_refresh_keeps_cached_value():
    cache = InMemoryPriceCache(capacity=10)
    old = make_record("a", age_s=3 * HOUR)
    cache.put("a", old)

    cache.acquire_refresh_slot("a")
    outcome = cache.release_refresh_slot("a", error=UpstreamError("boom"))

    assert not outcome.ok
    assert outcome.updated is False
    assert outcome.record is old
    assert cache.peek("a") is old
    assert cache.refresh_failures == 1
    assert "boom" in cache.last_failures["a"]


@pytest.mark.asyncio
async def test_release_without_insert_still_hands_record_to_waiters():
    cache = InMemoryPriceCache(capacity=10)
    _, fut = cache.acquire_refresh_slot("x")
    record = make_record("x")
    outcome = cache.release_refresh_slot("x", record=record, insert=False)

    assert "x" not in cache
    assert fut.result().record is record
    assert outcome.updated


@pytest.mark.asyncio
async def test_slot_released_after_eviction_of_its_entry():
    cache = InMemoryPriceCache(capacity=1)
    cache.put("a", make_record("a", age_s=3 * HOUR))
    cache.acquire_refresh_slot("a")
    cache.put("b", make_record("b"))          # evicts a mid-refresh

    outcome = cache.release_refresh_slot("a", record=make_record("a"))
    assert outcome.ok
    assert "a" in cache
    assert "b" not in cache


def test_invalidate_clear_and_stats():
    cache = InMemoryPriceCache(capacity=10)
    cache.put("fresh", make_record("fresh", age_s=60))
    cache.put("stale", make_record("stale", age_s=3 * HOUR))
    cache.put("old", make_record("old", age_s=20 * HOUR))
    cache.get("fresh")
    cache.get("missing")

    stats = cache.stats()
    assert stats["size"] == 3
    assert (stats["fresh"], stats["stale"], stats["expired"]) == (1, 1, 1)
    assert stats["hits"] == 1 and stats["misses"] == 1

    assert cache.invalidate("old") is True
    assert cache.invalidate("old") is False
    cache.clear()
    assert len(cache) == 0


@pytest.mark.asyncio
async def test_successful_refresh_clears_earlier_failure():
    cache = InMemoryPriceCache(capacity=10)
    cache.acquire_refresh_slot("a")
    cache.release_refresh_slot("a", error=UpstreamError("boom"))
    assert "a" in cache.last_failures

    cache.acquire_refresh_slot("a")
    cache.release_refresh_slot("a", record=make_record("a"))

    assert "a" not in cache.last_failures


@pytest.mark.asyncio
async def test_failure_log_is_bounded_by_capacity():
    cache = InMemoryPriceCache(capacity=3)
    for i in range(20):
        key = f"ghost-{i}"
        cache.acquire_refresh_slot(key)
        cache.release_refresh_slot(key, error=UpstreamError("no price"))

    assert list(cache.last_failures) == ["ghost-17", "ghost-18", "ghost-19"]
    assert cache.refresh_failures == 20


@pytest.mark.asyncio
async def test_invalidate_and_clear_drop_failure_entries():
    cache = InMemoryPriceCache(capacity=10)
    for key in ("a", "b"):
        cache.put(key, make_record(key, age_s=3 * HOUR))
        cache.acquire_refresh_slot(key)
        cache.release_refresh_slot(key, error=UpstreamError("boom"))

    cache.invalidate("a")
    assert list(cache.last_failures) == ["b"]
    cache.clear()
    assert not cache.last_failures
