"""Tests for background revalidation of stale reads."""

import pytest

from pricing_engine.cache.memory_cache import InMemoryPriceCache
from pricing_engine.errors import UpstreamError
from pricing_engine.orchestrator.revalidator import BackgroundRevalidator
from pricing_engine.store.memory_store import InMemoryPriceStore
from tests.helpers.fake_provider import HOUR, FakeProvider, make_client, make_record


def build(provider, stored=(), cached=(), **kwargs):
    cache = InMemoryPriceCache(capacity=10)
    for record in cached:
        cache.put(record.item_key, record)
    store = InMemoryPriceStore(list(stored))
    revalidator = BackgroundRevalidator(cache, store, make_client(provider), **kwargs)
    return cache, store, revalidator


@pytest.mark.asyncio
async def test_stale_key_is_refreshed_into_cache_and_store():
    stale = make_record("a", age_s=3 * HOUR, price=10.0)
    provider = FakeProvider(prices={"a": 11.0})
    cache, store, revalidator = build(provider, stored=[stale], cached=[stale])

    granted, fut = cache.acquire_refresh_slot("a")
    assert granted and revalidator.schedule("a")
    await revalidator.drain()

    assert provider.calls == [["a"]]
    assert cache.peek("a").raw_price == 11.0
    assert (await store.get_by_key("a")).raw_price == 11.0
    assert fut.result().updated
    assert not cache.is_refreshing("a")
    assert revalidator.refreshed == 1


@pytest.mark.asyncio
async def test_fresh_store_record_short_circuits_upstream():
    stale = make_record("a", age_s=3 * HOUR, price=10.0)
    fresh = make_record("a", age_s=60, price=12.0)
    provider = FakeProvider()
    cache, _, revalidator = build(provider, stored=[fresh], cached=[stale])

    cache.acquire_refresh_slot("a")
    revalidator.schedule("a")
    await revalidator.drain()

    assert provider.calls == []
    assert cache.peek("a").raw_price == 12.0
    assert revalidator.from_store == 1


@pytest.mark.asyncio
async def test_upstream_failure_keeps_old_value_and_frees_slot():
    stale = make_record("a", age_s=3 * HOUR, price=10.0)
    provider = FakeProvider(error=UpstreamError("HTTP 500"))
    cache, _, revalidator = build(provider, stored=[stale], cached=[stale])

    _, fut = cache.acquire_refresh_slot("a")
    revalidator.schedule("a")
    await revalidator.drain()

    assert cache.peek("a") is stale
    assert not cache.is_refreshing("a")
    assert isinstance(fut.result().error, UpstreamError)
    assert revalidator.failed == 1
    assert cache.refresh_failures == 1


@pytest.mark.asyncio
async def test_full_pool_rejects_and_releases_slot():
    stale = make_record("a", age_s=3 * HOUR)
    cache, _, revalidator = build(FakeProvider(), cached=[stale], max_pending=0)

    cache.acquire_refresh_slot("a")
    assert revalidator.schedule("a") is False
    assert not cache.is_refreshing("a")
    assert revalidator.stats()["rejected"] == 1


@pytest.mark.asyncio
async def test_slow_refresh_times_out_without_leaking_slot():
    stale = make_record("a", age_s=3 * HOUR)
    cache, _, revalidator = build(FakeProvider(delay=0.5), cached=[stale], timeout_s=0.05)

    _, fut = cache.acquire_refresh_slot("a")
    revalidator.schedule("a")
    await revalidator.drain()

    assert fut.done()
    assert not cache.is_refreshing("a")
    assert cache.peek("a") is stale
