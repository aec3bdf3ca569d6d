"""
Card Price Engine — Configuration
──────────────────────────────────
Single source of truth for every duration, budget and limit the pricing
layer uses. Each value can be overridden with an environment variable;
a local .env file is honoured.

Staleness (seconds since the upstream fetch that produced a price):
  T_FRESH        2 hours   → serve as-is
  T_EXPIRED     12 hours   → mirrors the 12-hour pricing sync cycle
  SPEED_EXPIRED 48 hours   → speed mode tolerates much older prices
"""

import os
from dataclasses import dataclass, field
from typing import Dict

from dotenv import load_dotenv

from pricing_engine.errors import ConfigurationError
from pricing_engine.models.price_record import Priority

load_dotenv()


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be a number, got {raw!r}")


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be an integer, got {raw!r}")


# ── Staleness thresholds (seconds) ────────────────────────────
T_FRESH          = 2 * 3600
T_EXPIRED        = 12 * 3600
SPEED_EXPIRED    = 48 * 3600

# ── In-memory cache ───────────────────────────────────────────
CACHE_CAPACITY   = 1000

# ── Upstream budget ───────────────────────────────────────────
# Scrydex bills per request; 60/min with a burst of 5 stays well under plan.
BATCH_SIZE              = 50
REQUESTS_PER_MINUTE     = 60
RATE_BURST              = 5
MAX_CONCURRENT_UPSTREAM = 4
UPSTREAM_MAX_RETRIES    = 3
BACKOFF_BASE_S          = 1.0
BACKOFF_MAX_S           = 60.0

# ── Background work ───────────────────────────────────────────
REVALIDATE_CONCURRENCY  = 4
REVALIDATE_MAX_PENDING  = 256
REVALIDATE_TIMEOUT_S    = 30.0

SYNC_INTERVAL_S    = 12 * 3600
SYNC_BATCH_COUNT   = 1000

# ── Per-priority resolve timeouts (seconds) ───────────────────
RESOLVE_TIMEOUTS: Dict[Priority, float] = {
    Priority.SPEED:     0.1,
    Priority.BALANCED:  3.0,
    Priority.FRESHNESS: 10.0,
}

DEFAULT_CURRENCY = "USD"

REDIS_URL         = "redis://localhost:6379"
SCRYDEX_BASE_URL  = "https://api.scrydex.com/pokemon/v1"


@dataclass(frozen=True)
class PricingSettings:
    t_fresh_s:               float = T_FRESH
    t_expired_s:             float = T_EXPIRED
    speed_expired_s:         float = SPEED_EXPIRED
    cache_capacity:          int   = CACHE_CAPACITY
    batch_size:              int   = BATCH_SIZE
    requests_per_minute:     float = REQUESTS_PER_MINUTE
    rate_burst:              float = RATE_BURST
    max_concurrent_upstream: int   = MAX_CONCURRENT_UPSTREAM
    upstream_max_retries:    int   = UPSTREAM_MAX_RETRIES
    backoff_base_s:          float = BACKOFF_BASE_S
    backoff_max_s:           float = BACKOFF_MAX_S
    revalidate_concurrency:  int   = REVALIDATE_CONCURRENCY
    revalidate_max_pending:  int   = REVALIDATE_MAX_PENDING
    revalidate_timeout_s:    float = REVALIDATE_TIMEOUT_S
    sync_interval_s:         float = SYNC_INTERVAL_S
    sync_batch_count:        int   = SYNC_BATCH_COUNT
    timeouts:                Dict[Priority, float] = field(
        default_factory=lambda: dict(RESOLVE_TIMEOUTS)
    )
    default_currency:        str   = DEFAULT_CURRENCY
    redis_url:               str   = REDIS_URL
    scrydex_api_key:         str   = ""
    scrydex_team_id:         str   = ""
    scrydex_base_url:        str   = SCRYDEX_BASE_URL

    def __post_init__(self):
        self.validate()

    def validate(self):
        positive = {
            "t_fresh_s":               self.t_fresh_s,
            "t_expired_s":             self.t_expired_s,
            "cache_capacity":          self.cache_capacity,
            "batch_size":              self.batch_size,
            "requests_per_minute":     self.requests_per_minute,
            "rate_burst":              self.rate_burst,
            "max_concurrent_upstream": self.max_concurrent_upstream,
            "revalidate_concurrency":  self.revalidate_concurrency,
            "revalidate_max_pending":  self.revalidate_max_pending,
            "revalidate_timeout_s":    self.revalidate_timeout_s,
            "backoff_base_s":          self.backoff_base_s,
            "backoff_max_s":           self.backoff_max_s,
            "sync_interval_s":         self.sync_interval_s,
            "sync_batch_count":        self.sync_batch_count,
        }
        for name, value in positive.items():
            if value <= 0:
                raise ConfigurationError(f"{name} must be positive, got {value}")
        if self.t_fresh_s >= self.t_expired_s:
            raise ConfigurationError(
                f"t_fresh_s ({self.t_fresh_s}) must be below t_expired_s ({self.t_expired_s})"
            )
        if self.speed_expired_s < self.t_expired_s:
            raise ConfigurationError("speed_expired_s must not be below t_expired_s")
        if self.upstream_max_retries < 0:
            raise ConfigurationError("upstream_max_retries must not be negative")
        missing = [p for p in Priority if p not in self.timeouts]
        if missing:
            raise ConfigurationError(f"No resolve timeout for {[p.value for p in missing]}")
        for priority, timeout in self.timeouts.items():
            if timeout <= 0:
                raise ConfigurationError(f"Timeout for {priority.value} must be positive")


def load_settings() -> PricingSettings:
    """Build settings from module defaults plus environment overrides."""
    return PricingSettings(
        t_fresh_s               = _env_float("PRICING_T_FRESH_S", T_FRESH),
        t_expired_s             = _env_float("PRICING_T_EXPIRED_S", T_EXPIRED),
        speed_expired_s         = _env_float("PRICING_SPEED_EXPIRED_S", SPEED_EXPIRED),
        cache_capacity          = _env_int("PRICING_CACHE_CAPACITY", CACHE_CAPACITY),
        batch_size              = _env_int("PRICING_BATCH_SIZE", BATCH_SIZE),
        requests_per_minute     = _env_float("PRICING_REQUESTS_PER_MINUTE", REQUESTS_PER_MINUTE),
        rate_burst              = _env_float("PRICING_RATE_BURST", RATE_BURST),
        max_concurrent_upstream = _env_int("PRICING_MAX_CONCURRENT_UPSTREAM", MAX_CONCURRENT_UPSTREAM),
        upstream_max_retries    = _env_int("PRICING_UPSTREAM_MAX_RETRIES", UPSTREAM_MAX_RETRIES),
        backoff_base_s          = _env_float("PRICING_BACKOFF_BASE_S", BACKOFF_BASE_S),
        backoff_max_s           = _env_float("PRICING_BACKOFF_MAX_S", BACKOFF_MAX_S),
        revalidate_concurrency  = _env_int("PRICING_REVALIDATE_CONCURRENCY", REVALIDATE_CONCURRENCY),
        revalidate_max_pending  = _env_int("PRICING_REVALIDATE_MAX_PENDING", REVALIDATE_MAX_PENDING),
        revalidate_timeout_s    = _env_float("PRICING_REVALIDATE_TIMEOUT_S", REVALIDATE_TIMEOUT_S),
        sync_interval_s         = _env_float("PRICING_SYNC_INTERVAL_S", SYNC_INTERVAL_S),
        sync_batch_count        = _env_int("PRICING_SYNC_BATCH_COUNT", SYNC_BATCH_COUNT),
        timeouts = {
            Priority.SPEED:     _env_float("PRICING_TIMEOUT_SPEED_S", RESOLVE_TIMEOUTS[Priority.SPEED]),
            Priority.BALANCED:  _env_float("PRICING_TIMEOUT_BALANCED_S", RESOLVE_TIMEOUTS[Priority.BALANCED]),
            Priority.FRESHNESS: _env_float("PRICING_TIMEOUT_FRESHNESS_S", RESOLVE_TIMEOUTS[Priority.FRESHNESS]),
        },
        default_currency = os.environ.get("PRICING_DEFAULT_CURRENCY", DEFAULT_CURRENCY),
        redis_url        = os.environ.get("REDIS_URL", REDIS_URL),
        scrydex_api_key  = os.environ.get("SCRYDEX_API_KEY", ""),
        scrydex_team_id  = os.environ.get("SCRYDEX_TEAM_ID", ""),
        scrydex_base_url = os.environ.get("SCRYDEX_BASE_URL", SCRYDEX_BASE_URL).rstrip("/"),
    )
