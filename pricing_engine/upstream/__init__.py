from pricing_engine.upstream.client import BatchResult, RateLimitedUpstreamClient
from pricing_engine.upstream.providers import PricingProvider, ProviderResponse, ScrydexProvider

__all__ = [
    "BatchResult", "RateLimitedUpstreamClient",
    "PricingProvider", "ProviderResponse", "ScrydexProvider",
]
