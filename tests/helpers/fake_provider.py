"""Fake pricing provider and wiring helpers for tests.

``FakeProvider`` records every batch it is asked for in ``calls`` and can
be told to be slow, to leave keys unpriced, to raise a rate limit for the
next N requests or to fail outright.
"""

import asyncio
import time
from typing import Dict, Iterable, List, Optional

from pricing_engine.config import PricingSettings, RESOLVE_TIMEOUTS
from pricing_engine.engine import PricingEngine, build_engine
from pricing_engine.errors import RateLimited
from pricing_engine.models.price_record import PriceRecord, Priority
from pricing_engine.orchestrator.rate_limiter import TokenBucket
from pricing_engine.store.memory_store import InMemoryPriceStore
from pricing_engine.upstream.client import RateLimitedUpstreamClient
from pricing_engine.upstream.providers import PricingProvider, ProviderResponse

HOUR = 3600


def make_record(key: str, age_s: float = 0.0, price: float = 10.0,
                now: Optional[float] = None) -> PriceRecord:
    now = time.time() if now is None else now
    return PriceRecord(item_key=key, fetched_at=now - age_s, raw_price=price)


def fast_bucket() -> TokenBucket:
    return TokenBucket(capacity=1000, rate=1000)


class FakeProvider(PricingProvider):

    def __init__(self, prices: Optional[Dict[str, float]] = None,
                 default_price: Optional[float] = 25.0,
                 missing: Iterable[str] = (),
                 delay: float = 0.0,
                 rate_limit_times: int = 0,
                 retry_after: Optional[float] = None,
                 error: Optional[BaseException] = None):
        self.prices           = dict(prices or {})
        self.default_price    = default_price
        self.missing          = set(missing)
        self.delay            = delay
        self.rate_limit_times = rate_limit_times
        self.retry_after      = retry_after
        self.error            = error
        self.calls: List[List[str]] = []
        self.closed = False

    @property
    def name(self) -> str:
        return "fake"

    def calls_for(self, key: str) -> int:
        return sum(1 for batch in self.calls if key in batch)

    async def fetch_prices(self, keys: List[str]) -> ProviderResponse:
        self.calls.append(list(keys))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.rate_limit_times > 0:
            self.rate_limit_times -= 1
            raise RateLimited("fake rate limit", retry_after=self.retry_after)
        if self.error is not None:
            raise self.error

        now = time.time()
        out = ProviderResponse()
        for key in keys:
            price = self.prices.get(key, self.default_price)
            if key in self.missing or price is None:
                out.failed.append(key)
                continue
            out.records[key] = PriceRecord(item_key=key, fetched_at=now, raw_price=price)
        return out

    async def close(self):
        self.closed = True


def make_client(provider: PricingProvider, **kwargs) -> RateLimitedUpstreamClient:
    kwargs.setdefault("bucket", fast_bucket())
    kwargs.setdefault("backoff_base_s", 0.001)
    kwargs.setdefault("backoff_max_s", 0.01)
    return RateLimitedUpstreamClient(provider, **kwargs)


def make_engine(records: Iterable[PriceRecord] = (),
                provider: Optional[FakeProvider] = None,
                store=None,
                cached: Iterable[PriceRecord] = (),
                timeouts: Optional[Dict[Priority, float]] = None,
                **settings) -> PricingEngine:
    """Engine over an in-memory store and a fake provider, with fast backoff."""
    all_timeouts = dict(RESOLVE_TIMEOUTS)
    all_timeouts[Priority.SPEED] = 1.0
    all_timeouts.update(timeouts or {})
    settings.setdefault("backoff_base_s", 0.001)
    settings.setdefault("backoff_max_s", 0.01)
    engine = build_engine(
        PricingSettings(timeouts=all_timeouts, **settings),
        store=store if store is not None else InMemoryPriceStore(list(records)),
        provider=provider or FakeProvider(),
        bucket=fast_bucket(),
    )
    for record in cached:
        engine.cache.put(record.item_key, record)
    return engine
