from pricing_engine.cache.memory_cache import CacheEntry, InMemoryPriceCache, RefreshOutcome
from pricing_engine.cache.staleness import StalenessPolicy

__all__ = ["CacheEntry", "InMemoryPriceCache", "RefreshOutcome", "StalenessPolicy"]
