from pricing_engine.models.price_record import (
    PriceRecord, PriceResult, PriceState, Priority, SourceTier,
)

__all__ = ["PriceRecord", "PriceResult", "PriceState", "Priority", "SourceTier"]
