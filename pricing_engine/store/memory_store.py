"""Dict-backed PersistentPriceStore for tests and single-process deployments."""

import logging
from typing import Dict, List, Optional

from pricing_engine.models.price_record import PriceRecord
from pricing_engine.store.base import PersistentPriceStore, SyncCursor, staleness_order

log = logging.getLogger("pe.store")


class InMemoryPriceStore(PersistentPriceStore):

    name = "memory"

    def __init__(self, records: Optional[List[PriceRecord]] = None):
        self._records: Dict[str, PriceRecord] = {}
        for record in records or []:
            self._records[record.item_key] = record

    async def get_by_key(self, key: str) -> Optional[PriceRecord]:
        return self._records.get(key)

    async def upsert(self, record: PriceRecord) -> bool:
        current = self._records.get(record.item_key)
        if current is not None and record.fetched_at < current.fetched_at:
            log.debug(f"{record.item_key}: store dropped older record")
            return False
        self._records[record.item_key] = record
        return True

    async def get_most_stale(self, n: int, after: Optional[SyncCursor] = None) -> List[PriceRecord]:
        ordered = sorted(self._records.values(), key=staleness_order)
        if after is not None:
            boundary = (after.fetched_at, after.item_key)
            ordered = [r for r in ordered if staleness_order(r) > boundary]
        return ordered[:max(0, n)]

    async def count(self) -> int:
        return len(self._records)
