"""
Card Price Engine — Persistent Price Store
───────────────────────────────────────────
Durable item key → PriceRecord storage. The pricing layer only needs
point reads, upsert-by-key and a staleness-ordered scan; upsert is
monotonic in fetched_at so an older record can never overwrite a newer
one, whatever order writes arrive in.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional

from pricing_engine.models.price_record import PriceRecord


@dataclass(frozen=True, order=True)
class SyncCursor:
    """
    Boundary of the last staleness-ordered batch handed to the scheduler.
    Ordering is (fetched_at, item_key); get_most_stale(after=cursor) only
    returns records strictly beyond it. Not persisted across restarts.
    """
    fetched_at: float
    item_key:   str

    @classmethod
    def of(cls, record: PriceRecord) -> "SyncCursor":
        return cls(record.fetched_at, record.item_key)


def staleness_order(record: PriceRecord):
    return (record.fetched_at, record.item_key)


class PersistentPriceStore(ABC):

    name = "store"

    @abstractmethod
    async def get_by_key(self, key: str) -> Optional[PriceRecord]: ...

    @abstractmethod
    async def upsert(self, record: PriceRecord) -> bool:
        """Write record. Returns False when dropped because a newer one is stored."""

    @abstractmethod
    async def get_most_stale(self, n: int, after: Optional[SyncCursor] = None) -> List[PriceRecord]:
        """Up to n records, oldest fetched_at first, ties by item key."""

    @abstractmethod
    async def count(self) -> int: ...

    async def get_many(self, keys: Iterable[str]) -> Dict[str, PriceRecord]:
        out = {}
        for key in keys:
            record = await self.get_by_key(key)
            if record is not None:
                out[key] = record
        return out

    async def close(self):
        return None
