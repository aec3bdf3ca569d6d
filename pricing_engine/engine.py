"""
Card Price Engine — Wiring
───────────────────────────
Builds one cache, store, upstream client, revalidator, sync scheduler
and orchestrator from PricingSettings. Every collaborator can be passed
in, which is how the tests and the HTTP app swap in fakes.

    engine = build_engine()                # settings from env / .env
    await engine.start()                   # schedules the 12h sync
    result = await engine.orchestrator.resolve("sv4-23", "balanced")
    await engine.close()
"""

import logging
from dataclasses import dataclass
from typing import Optional

from pricing_engine.cache.memory_cache import InMemoryPriceCache
from pricing_engine.cache.staleness import StalenessPolicy
from pricing_engine.config import PricingSettings, load_settings
from pricing_engine.orchestrator.rate_limiter import TokenBucket
from pricing_engine.orchestrator.resolver import PricingOrchestrator
from pricing_engine.orchestrator.revalidator import BackgroundRevalidator
from pricing_engine.orchestrator.scheduler import SyncScheduler
from pricing_engine.store.base import PersistentPriceStore
from pricing_engine.store.redis_store import RedisPriceStore
from pricing_engine.upstream.client import RateLimitedUpstreamClient
from pricing_engine.upstream.providers import PricingProvider, ScrydexProvider

log = logging.getLogger("pe.engine")


@dataclass
class PricingEngine:
    settings:     PricingSettings
    cache:        InMemoryPriceCache
    store:        PersistentPriceStore
    client:       RateLimitedUpstreamClient
    revalidator:  BackgroundRevalidator
    scheduler:    SyncScheduler
    orchestrator: PricingOrchestrator

    async def start(self, run_sync_now: bool = False):
        ping = getattr(self.store, "ping", None)
        if ping is not None and not await ping():
            log.warning(f"{self.store.name} store unreachable at startup — serving from memory until it recovers")
        self.scheduler.start(run_immediately=run_sync_now)
        log.info(f"Pricing engine started (store={self.store.name}, provider={self.client.provider.name})")

    async def close(self):
        await self.scheduler.shutdown()
        await self.orchestrator.close()
        await self.client.close()
        await self.store.close()
        log.info("Pricing engine stopped")

    def stats(self) -> dict:
        out = self.orchestrator.stats()
        out["scheduler"] = self.scheduler.status()
        return out


def build_engine(settings: Optional[PricingSettings] = None,
                 store: Optional[PersistentPriceStore] = None,
                 provider: Optional[PricingProvider] = None,
                 bucket: Optional[TokenBucket] = None) -> PricingEngine:
    """
    Wire all components. Missing provider credentials raise
    ConfigurationError here, at startup, never per request.
    """
    settings = settings or load_settings()
    policy   = StalenessPolicy.from_settings(settings)

    if store is None:
        store = RedisPriceStore(settings.redis_url)

    if provider is None:
        provider = ScrydexProvider(
            api_key          = settings.scrydex_api_key,
            team_id          = settings.scrydex_team_id,
            base_url         = settings.scrydex_base_url,
            default_currency = settings.default_currency,
        )

    cache  = InMemoryPriceCache(settings.cache_capacity, policy)
    client = RateLimitedUpstreamClient(
        provider,
        bucket         = bucket or TokenBucket.per_minute(settings.requests_per_minute, settings.rate_burst),
        max_concurrent = settings.max_concurrent_upstream,
        batch_size     = settings.batch_size,
        max_retries    = settings.upstream_max_retries,
        backoff_base_s = settings.backoff_base_s,
        backoff_max_s  = settings.backoff_max_s,
    )
    revalidator = BackgroundRevalidator(
        cache, store, client, policy,
        max_concurrent = settings.revalidate_concurrency,
        max_pending    = settings.revalidate_max_pending,
        timeout_s      = settings.revalidate_timeout_s,
    )
    scheduler = SyncScheduler(
        store, client, cache,
        batch_count = settings.sync_batch_count,
        interval_s  = settings.sync_interval_s,
    )
    orchestrator = PricingOrchestrator(
        cache, store, client, revalidator, policy,
        timeouts = settings.timeouts,
    )
    return PricingEngine(settings, cache, store, client, revalidator, scheduler, orchestrator)
