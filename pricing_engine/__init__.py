"""
Card Price Engine
─────────────────
Tiered price resolution for collectible cards: in-memory cache →
persistent store → rate-limited upstream provider, with background
revalidation and a 12-hour sync of the most-stale records.

    from pricing_engine import build_engine
    engine = build_engine()
    result = await engine.orchestrator.resolve("sv4-23", "speed")
"""

from .errors import ConfigurationError, PricingError
from .models import PriceRecord, PriceResult, PriceState, Priority, SourceTier
from .engine import PricingEngine, build_engine

__all__ = [
    "ConfigurationError", "PricingError",
    "PriceRecord", "PriceResult", "PriceState", "Priority", "SourceTier",
    "PricingEngine", "build_engine",
]
