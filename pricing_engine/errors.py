"""
Card Price Engine — Error Taxonomy
───────────────────────────────────
Only ConfigurationError ever reaches a resolve() caller. Everything else
is absorbed by the pricing layer and turned into data (a stale, expired
or unavailable PriceResult).
"""

from typing import Optional


class PricingError(Exception):
    """Base class for pricing layer errors."""


class ConfigurationError(PricingError):
    """Misconfiguration an operator must fix (bad settings, rejected credentials)."""


class StoreUnavailable(PricingError):
    """The persistent price store could not be reached for this operation."""


class UpstreamError(PricingError):
    """The pricing provider failed for a whole batch."""


class UpstreamTimeout(UpstreamError):
    """The pricing provider did not answer within its deadline."""


class RateLimited(UpstreamError):
    """The pricing provider refused the request because of its rate limit."""

    def __init__(self, message: str = "rate limited", retry_after: Optional[float] = None):
        super().__init__(message)
        self.retry_after = retry_after
