"""
Card Price Engine — Staleness Policy
─────────────────────────────────────
Maps the age of a price to Fresh / Stale / Expired.

  age <  fresh            → Fresh    serve as-is
  fresh <= age < expired  → Stale    serve, refresh in background
  age >= expired          → Expired  never served silently

Priority shifts the thresholds but never inverts them:
  freshness  halves both
  speed      keeps fresh, only calls Expired past SPEED_EXPIRED (48h)
"""

from dataclasses import dataclass
from typing import Optional, Tuple

from pricing_engine import config
from pricing_engine.errors import ConfigurationError
from pricing_engine.models.price_record import PriceRecord, PriceState, Priority


@dataclass(frozen=True)
class StalenessPolicy:
    fresh_s:         float = config.T_FRESH
    expired_s:       float = config.T_EXPIRED
    speed_expired_s: float = config.SPEED_EXPIRED

    def __post_init__(self):
        if not 0 < self.fresh_s < self.expired_s:
            raise ConfigurationError(
                f"Staleness thresholds must satisfy 0 < fresh ({self.fresh_s}) "
                f"< expired ({self.expired_s})"
            )

    @classmethod
    def from_settings(cls, settings) -> "StalenessPolicy":
        return cls(settings.t_fresh_s, settings.t_expired_s, settings.speed_expired_s)

    def thresholds(self, priority: Priority = Priority.BALANCED) -> Tuple[float, float]:
        if priority is Priority.FRESHNESS:
            return self.fresh_s / 2, self.expired_s / 2
        if priority is Priority.SPEED:
            return self.fresh_s, max(self.expired_s, self.speed_expired_s)
        if priority is Priority.BALANCED:
            return self.fresh_s, self.expired_s
        raise ValueError(f"Unknown priority: {priority!r}")

    def classify(self, age: float, priority: Priority = Priority.BALANCED) -> PriceState:
        fresh, expired = self.thresholds(priority)
        if age < fresh:
            return PriceState.FRESH
        if age < expired:
            return PriceState.STALE
        return PriceState.EXPIRED

    def classify_record(self, record: Optional[PriceRecord],
                        priority: Priority = Priority.BALANCED,
                        now: Optional[float] = None) -> PriceState:
        if record is None:
            return PriceState.UNAVAILABLE
        return self.classify(record.age_seconds(now), priority)
