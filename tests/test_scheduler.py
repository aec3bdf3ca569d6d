"""Tests for the periodic pricing sync: selection, state machine, retries."""

import pytest

from pricing_engine.cache.memory_cache import InMemoryPriceCache
from pricing_engine.errors import UpstreamError
from pricing_engine.orchestrator.scheduler import SyncScheduler, SyncState
from pricing_engine.store.memory_store import InMemoryPriceStore
from tests.helpers.fake_provider import HOUR, FakeProvider, make_client, make_record

AGES_H = {"k1": 1, "k2": 20, "k3": 3, "k4": 30, "k5": 11}


def build(provider=None, batch_count=3, cached=(), **client_kwargs):
    provider = provider or FakeProvider()
    store = InMemoryPriceStore([make_record(k, age_s=h * HOUR) for k, h in AGES_H.items()])
    cache = InMemoryPriceCache(capacity=10)
    for record in cached:
        cache.put(record.item_key, record)
    scheduler = SyncScheduler(store, make_client(provider, **client_kwargs), cache,
                              batch_count=batch_count, interval_s=3600)
    return scheduler, store, cache, provider


@pytest.mark.asyncio
async def test_run_refreshes_the_most_stale_records():
    scheduler, store, _, provider = build()

    report = await scheduler.run_once()

    assert provider.calls == [["k4", "k2", "k5"]]
    assert report.status == "completed"
    assert report.refreshed_keys == ["k4", "k2", "k5"]
    for key in ("k4", "k2", "k5"):
        assert (await store.get_by_key(key)).age_seconds() < 60
    assert (await store.get_by_key("k1")).age_seconds() > 0.9 * HOUR


@pytest.mark.asyncio
async def test_state_machine_returns_to_idle():
    scheduler, *_ = build()
    await scheduler.run_once()

    assert scheduler.state is SyncState.IDLE
    assert list(scheduler.transitions) == [
        SyncState.SELECTING, SyncState.FETCHING, SyncState.WRITING, SyncState.IDLE,
    ]


@pytest.mark.asyncio
async def test_rate_limit_fails_run_and_keys_are_retried_next():
    provider = FakeProvider(rate_limit_times=1)
    scheduler, store, _, _ = build(provider, max_retries=0)

    first = await scheduler.run_once()
    assert first.status == "failed"
    assert first.rate_limited
    assert sorted(first.failed_keys) == ["k2", "k4", "k5"]
    assert list(scheduler.transitions)[-2:] == [SyncState.FAILED, SyncState.IDLE]
    assert scheduler.state is SyncState.IDLE

    second = await scheduler.run_once()
    assert second.status == "completed"
    assert sorted(second.retried_keys) == ["k2", "k4", "k5"]
    assert sorted(second.refreshed_keys) == ["k2", "k4", "k5"]


@pytest.mark.asyncio
async def test_failed_batch_is_retried_once_at_end_of_run():
    provider = FakeProvider(error=UpstreamError("HTTP 500"))
    scheduler, *_ = build(provider)

    report = await scheduler.run_once()

    assert len(provider.calls) == 2
    assert report.retried_batches == 1
    assert report.failed_batches == 1
    assert report.status == "completed"
    assert sorted(report.failed_keys) == ["k2", "k4", "k5"]


@pytest.mark.asyncio
async def test_keys_refreshing_on_the_read_path_are_skipped():
    scheduler, _, cache, provider = build()
    cache.acquire_refresh_slot("k4")

    report = await scheduler.run_once()

    assert report.skipped_in_flight == ["k4"]
    assert provider.calls == [["k2", "k5"]]
    assert cache.is_refreshing("k4")
    assert "k4" not in report.failed_keys


@pytest.mark.asyncio
async def test_cache_updated_only_for_cached_keys():
    old_k2 = make_record("k2", age_s=20 * HOUR)
    scheduler, _, cache, _ = build(cached=[old_k2])

    await scheduler.run_once()

    assert cache.peek("k2").age_seconds() < 60
    assert "k4" not in cache
    assert "k5" not in cache


@pytest.mark.asyncio
async def test_cursor_moves_on_between_runs():
    scheduler, _, _, provider = build(batch_count=2)

    await scheduler.run_once()
    await scheduler.run_once()

    assert provider.calls == [["k4", "k2"], ["k5", "k3"]]
    assert scheduler.cursor.item_key == "k3"


@pytest.mark.asyncio
async def test_start_stop_and_status():
    scheduler, *_ = build()
    scheduler.start()
    try:
        status = scheduler.status()
        assert status["running"] is True
        assert status["next_run"] is not None
        assert status["state"] == "idle"
    finally:
        scheduler.stop()
    assert scheduler.running is False


@pytest.mark.asyncio
async def test_trigger_now_runs_in_background_once():
    scheduler, _, _, provider = build()

    first = scheduler.trigger_now()
    second = scheduler.trigger_now()
    await scheduler._manual

    assert first["triggered"] is True
    assert second["triggered"] is False
    assert len(provider.calls) == 1
    assert scheduler.last_report.status == "completed"


@pytest.mark.asyncio
async def test_most_stale_key_is_picked_again_after_repeated_failures():
    provider = FakeProvider(missing={"k4"})
    scheduler, store, _, _ = build(provider, batch_count=2)

    await scheduler.run_once()          # k4 unpriced upstream
    await scheduler.run_once()          # retried first, fails again
    provider.missing.clear()
    third = await scheduler.run_once()

    assert "k4" in third.refreshed_keys
    assert (await store.get_by_key("k4")).age_seconds() < 60


@pytest.mark.asyncio
async def test_tied_records_make_progress_past_the_boundary():
    now = 1_700_000_000.0
    provider = FakeProvider()
    store = InMemoryPriceStore([make_record(k, now=now) for k in ("t1", "t2", "t3", "t4")])
    cache = InMemoryPriceCache(capacity=10)
    scheduler = SyncScheduler(store, make_client(provider), cache, batch_count=2, interval_s=3600)
    cache.acquire_refresh_slot("t1")
    cache.acquire_refresh_slot("t2")

    first = await scheduler.run_once()
    second = await scheduler.run_once()

    assert first.skipped_in_flight == ["t1", "t2"]
    assert provider.calls == [["t3", "t4"]]
    assert sorted(second.refreshed_keys) == ["t3", "t4"]


@pytest.mark.asyncio
async def test_single_record_store_keeps_retrying_its_only_key():
    provider = FakeProvider(missing={"solo"})
    store = InMemoryPriceStore([make_record("solo", age_s=30 * HOUR)])
    scheduler = SyncScheduler(store, make_client(provider), InMemoryPriceCache(capacity=10),
                              batch_count=1, interval_s=3600)

    for _ in range(3):
        await scheduler.run_once()
    provider.missing.clear()
    report = await scheduler.run_once()

    assert report.refreshed_keys == ["solo"]
