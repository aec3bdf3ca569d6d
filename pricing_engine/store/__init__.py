from pricing_engine.store.base import PersistentPriceStore, SyncCursor
from pricing_engine.store.memory_store import InMemoryPriceStore

__all__ = ["PersistentPriceStore", "SyncCursor", "InMemoryPriceStore"]
