"""
Card Price Engine — Pricing Providers
──────────────────────────────────────
A provider answers one batched lookup: "current prices for these item
keys". It reports keys it could not price as failed instead of failing
the whole batch, and translates transport problems into the pricing
error taxonomy:

  429              → RateLimited (Retry-After kept)
  401 / 403        → ConfigurationError (bad credentials)
  timeout          → UpstreamTimeout
  anything else    → UpstreamError

Providers do no rate limiting of their own; RateLimitedUpstreamClient
owns that.
"""

import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Dict, List, Optional

import httpx

from pricing_engine import config
from pricing_engine.errors import ConfigurationError, RateLimited, UpstreamError, UpstreamTimeout
from pricing_engine.models.price_record import PriceRecord

log = logging.getLogger("pe.upstream")

REQUEST_TIMEOUT = 10

TREND_WINDOWS = ("days_7", "days_30", "days_90", "days_180")


@dataclass
class ProviderResponse:
    records: Dict[str, PriceRecord] = field(default_factory=dict)
    failed:  List[str] = field(default_factory=list)


class PricingProvider(ABC):
    """
    Base class for upstream pricing sources.

    Subclasses must implement:
      - name: str property
      - fetch_prices(keys) -> ProviderResponse
    """

    @property
    @abstractmethod
    def name(self) -> str: ...

    @abstractmethod
    async def fetch_prices(self, keys: List[str]) -> ProviderResponse: ...

    async def close(self):
        return None


class ScrydexProvider(PricingProvider):
    """Scrydex card API. One request per batch: id:A OR id:B … with prices included."""

    def __init__(self, api_key: str, team_id: str,
                 base_url: str = config.SCRYDEX_BASE_URL,
                 default_currency: str = config.DEFAULT_CURRENCY,
                 client: Optional[httpx.AsyncClient] = None,
                 timeout: float = REQUEST_TIMEOUT):
        if not api_key or not team_id:
            raise ConfigurationError("SCRYDEX_API_KEY and SCRYDEX_TEAM_ID must both be set")
        self._api_key  = api_key
        self._team_id  = team_id
        self.base_url  = base_url.rstrip("/")
        self.currency  = default_currency
        self.timeout   = timeout
        self._client   = client

    @property
    def name(self) -> str:
        return "scrydex"

    def _headers(self) -> dict:
        return {
            "Authorization": f"Bearer {self._api_key}",
            "X-Team-ID":     self._team_id,
            "Accept":        "application/json",
        }

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                limits=httpx.Limits(max_connections=20, max_keepalive_connections=10),
                timeout=self.timeout,
            )
        return self._client

    async def fetch_prices(self, keys: List[str]) -> ProviderResponse:
        if not keys:
            return ProviderResponse()
        client = await self._get_client()
        params = {
            "q":         " OR ".join(f"id:{k}" for k in keys),
            "include":   "prices",
            "page_size": len(keys),
        }
        try:
            r = await client.get(f"{self.base_url}/cards", params=params,
                                 headers=self._headers(), timeout=self.timeout)
        except httpx.TimeoutException as e:
            raise UpstreamTimeout(f"Scrydex timeout for {len(keys)} keys") from e
        except httpx.HTTPError as e:
            raise UpstreamError(f"Scrydex request failed: {e}") from e

        if r.status_code == 429:
            raise RateLimited("Scrydex rate limit", retry_after=_retry_after(r))
        if r.status_code in (401, 403):
            raise ConfigurationError(f"Scrydex rejected credentials (HTTP {r.status_code})")
        if r.status_code != 200:
            raise UpstreamError(f"Scrydex HTTP {r.status_code}: {r.text[:200]}")

        try:
            data = r.json()
        except ValueError as e:
            raise UpstreamError("Scrydex returned a non-JSON body") from e

        cards = data.get("data", []) if isinstance(data, dict) else data
        if not isinstance(cards, list):
            raise UpstreamError("Scrydex payload has no card list")

        wanted  = set(keys)
        fetched = time.time()
        out     = ProviderResponse()
        for card in cards:
            key = card.get("id") if isinstance(card, dict) else None
            if key not in wanted or key in out.records:
                continue
            try:
                record = parse_card_prices(card, fetched, self.currency)
            except (TypeError, ValueError, KeyError, AttributeError) as e:
                log.warning(f"{key}: unparseable price payload ({e})")
                continue
            if record is not None:
                out.records[key] = record

        out.failed = [k for k in keys if k not in out.records]
        if out.failed:
            log.info(f"Scrydex: {len(out.records)} priced, {len(out.failed)} failed")
        return out

    async def close(self):
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()


def _retry_after(r: httpx.Response) -> Optional[float]:
    raw = r.headers.get("Retry-After")
    if not raw:
        return None
    try:
        return max(0.0, float(raw))
    except ValueError:
        return None


def _price_entries(card: dict) -> List[dict]:
    entries = list(card.get("prices") or [])
    for variant in card.get("variants") or []:
        entries.extend(variant.get("prices") or [])
    return [e for e in entries if isinstance(e, dict)]


def _num(value) -> Optional[float]:
    if value is None or value == "":
        return None
    return round(float(value), 2)


def parse_card_prices(card: dict, fetched_at: float,
                      default_currency: str = config.DEFAULT_CURRENCY) -> Optional[PriceRecord]:
    """
    Build a PriceRecord from one card payload. Raw prices prefer the NM
    condition; graded prices are keyed "<company> <grade>". Returns None
    when the card carries no usable price at all.
    """
    entries = _price_entries(card)
    raw = [e for e in entries if e.get("type") == "raw" and e.get("market") is not None]
    graded = [e for e in entries if e.get("type") == "graded" and e.get("market") is not None]

    best_raw = next((e for e in raw if e.get("condition") == "NM"), raw[0] if raw else None)

    graded_prices: Dict[str, float] = {}
    for e in graded:
        label = " ".join(str(p) for p in (e.get("company"), e.get("grade")) if p)
        if label and label not in graded_prices:
            graded_prices[label] = _num(e["market"])

    if best_raw is None and not graded_prices:
        return None

    trends: Dict[str, float] = {}
    currency = default_currency
    if best_raw is not None:
        currency = best_raw.get("currency") or default_currency
        for window in TREND_WINDOWS:
            change = (best_raw.get("trends") or {}).get(window) or {}
            if change.get("percent_change") is not None:
                trends[window] = float(change["percent_change"])
    elif graded:
        currency = graded[0].get("currency") or default_currency

    return PriceRecord(
        item_key=card["id"],
        fetched_at=fetched_at,
        raw_price=_num(best_raw.get("market")) if best_raw else None,
        low_price=_num(best_raw.get("low")) if best_raw else None,
        graded_prices=graded_prices,
        currency=currency,
        trends=trends,
    )
