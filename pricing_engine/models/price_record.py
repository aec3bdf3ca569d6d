"""
Card Price Engine — Price Models
─────────────────────────────────
Canonical shapes for a valuation (PriceRecord) and for what a caller
gets back from the orchestrator (PriceResult).

PriceRecord is what the persistent store holds. source_tier only says
where a returned value came from and is never persisted.
"""

import time
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional


class Priority(str, Enum):
    """Caller-selected trade-off between latency and freshness."""
    SPEED     = "speed"
    BALANCED  = "balanced"
    FRESHNESS = "freshness"


class PriceState(str, Enum):
    FRESH       = "fresh"
    STALE       = "stale"
    EXPIRED     = "expired"
    UNAVAILABLE = "unavailable"

    @property
    def severity(self) -> int:
        return _SEVERITY[self]


_SEVERITY = {
    PriceState.FRESH:       0,
    PriceState.STALE:       1,
    PriceState.EXPIRED:     2,
    PriceState.UNAVAILABLE: 3,
}


class SourceTier(str, Enum):
    STORE    = "store"
    CACHE    = "cache"
    UPSTREAM = "upstream"


@dataclass
class PriceRecord:
    item_key:      str
    fetched_at:    float                       # epoch seconds of the upstream fetch
    raw_price:     Optional[float] = None      # ungraded market price
    low_price:     Optional[float] = None      # ungraded low
    graded_prices: Dict[str, float] = field(default_factory=dict)  # "PSA 10" → price
    currency:      str = "USD"
    trends:        Dict[str, float] = field(default_factory=dict)  # "days_7" → % change
    source_tier:   Optional[SourceTier] = None

    def age_seconds(self, now: Optional[float] = None) -> float:
        now = time.time() if now is None else now
        return max(0.0, now - self.fetched_at)

    def is_newer_than(self, other: Optional["PriceRecord"]) -> bool:
        return other is None or self.fetched_at > other.fetched_at

    def has_price(self) -> bool:
        return self.raw_price is not None or bool(self.graded_prices)

    def with_tier(self, tier: SourceTier) -> "PriceRecord":
        return replace(self, source_tier=tier)

    def to_dict(self) -> dict:
        return {
            "item_key":      self.item_key,
            "fetched_at":    self.fetched_at,
            "raw_price":     self.raw_price,
            "low_price":     self.low_price,
            "graded_prices": dict(self.graded_prices),
            "currency":      self.currency,
            "trends":        dict(self.trends),
        }

    @classmethod
    def from_dict(cls, d: dict) -> "PriceRecord":
        return cls(
            item_key=d["item_key"],
            fetched_at=float(d["fetched_at"]),
            raw_price=d.get("raw_price"),
            low_price=d.get("low_price"),
            graded_prices={k: float(v) for k, v in (d.get("graded_prices") or {}).items()},
            currency=d.get("currency") or "USD",
            trends={k: float(v) for k, v in (d.get("trends") or {}).items()},
        )


@dataclass
class PriceResult:
    """What resolve() returns. record is None only when state is UNAVAILABLE."""
    item_key:    str
    record:      Optional[PriceRecord]
    state:       PriceState
    source_tier: Optional[SourceTier] = None
    refreshing:  bool = False
    age_s:       Optional[float] = None

    @classmethod
    def unavailable(cls, item_key: str, refreshing: bool = False) -> "PriceResult":
        return cls(item_key=item_key, record=None, state=PriceState.UNAVAILABLE,
                   refreshing=refreshing)

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "item_key":    self.item_key,
            "state":       self.state.value,
            "source_tier": self.source_tier.value if self.source_tier else None,
            "refreshing":  self.refreshing,
            "age":         _fmt_age(int(self.age_s)) if self.age_s is not None else None,
            "record":      None,
        }
        if self.record:
            d["record"] = self.record.to_dict()
            d["record"]["fetched_at_iso"] = datetime.fromtimestamp(
                self.record.fetched_at, tz=timezone.utc
            ).isoformat()
        return d


def _fmt_age(seconds: int) -> str:
    if seconds < 3600:
        return f"{seconds // 60}m"
    if seconds < 86400:
        return f"{seconds // 3600}h"
    return f"{seconds // 86400}d"
