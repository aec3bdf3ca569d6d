"""
Card Price Engine — Redis Price Store
──────────────────────────────────────
Layout:
  price:record:{key}   JSON-encoded PriceRecord
  price:index          sorted set, member = item key, score = fetched_at

Redis orders equal scores by member, which is exactly the
(fetched_at, item_key) order the sync scheduler needs. Upserts go
through a Lua script so the "newer fetched_at wins" check and both
writes happen atomically on the server.
"""

import json
import logging
from typing import Dict, Iterable, List, Optional

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from pricing_engine import config
from pricing_engine.errors import StoreUnavailable
from pricing_engine.models.price_record import PriceRecord
from pricing_engine.store.base import PersistentPriceStore, SyncCursor

log = logging.getLogger("pe.store")

INDEX_KEY     = "price:index"
RECORD_PREFIX = "price:record:"

_UPSERT_LUA = """
local current = redis.call('ZSCORE', KEYS[2], ARGV[1])
if current and tonumber(current) > tonumber(ARGV[2]) then
  return 0
end
redis.call('SET', KEYS[1], ARGV[3])
redis.call('ZADD', KEYS[2], ARGV[2], ARGV[1])
return 1
"""


def key_record(item_key: str) -> str:
    return f"{RECORD_PREFIX}{item_key}"


class RedisPriceStore(PersistentPriceStore):

    name = "redis"

    def __init__(self, url: str = config.REDIS_URL, client: Optional[aioredis.Redis] = None,
                 scan_page: int = 200):
        self._redis = client or aioredis.from_url(url, decode_responses=True, socket_timeout=2)
        self._upsert = self._redis.register_script(_UPSERT_LUA)
        self._scan_page = scan_page

    async def ping(self) -> bool:
        try:
            return bool(await self._redis.ping())
        except (RedisError, OSError) as e:
            log.warning(f"Redis unavailable ({e})")
            return False

    async def get_by_key(self, key: str) -> Optional[PriceRecord]:
        try:
            raw = await self._redis.get(key_record(key))
        except (RedisError, OSError) as e:
            raise StoreUnavailable(f"get {key}: {e}") from e
        return _decode(raw)

    async def get_many(self, keys: Iterable[str]) -> Dict[str, PriceRecord]:
        keys = list(dict.fromkeys(keys))
        if not keys:
            return {}
        try:
            values = await self._redis.mget([key_record(k) for k in keys])
        except (RedisError, OSError) as e:
            raise StoreUnavailable(f"mget ({len(keys)} keys): {e}") from e
        out = {}
        for key, raw in zip(keys, values):
            record = _decode(raw)
            if record is not None:
                out[key] = record
        return out

    async def upsert(self, record: PriceRecord) -> bool:
        payload = json.dumps(record.to_dict())
        try:
            written = await self._upsert(
                keys=[key_record(record.item_key), INDEX_KEY],
                args=[record.item_key, repr(record.fetched_at), payload],
            )
        except (RedisError, OSError) as e:
            raise StoreUnavailable(f"upsert {record.item_key}: {e}") from e
        if not written:
            log.debug(f"{record.item_key}: store kept newer record")
        return bool(written)

    async def get_most_stale(self, n: int, after: Optional[SyncCursor] = None) -> List[PriceRecord]:
        if n <= 0:
            return []
        min_score = after.fetched_at if after else "-inf"
        keys: List[str] = []
        offset = 0
        try:
            while len(keys) < n:
                rows = await self._redis.zrangebyscore(
                    INDEX_KEY, min_score, "+inf",
                    start=offset, num=self._scan_page, withscores=True,
                )
                if not rows:
                    break
                offset += len(rows)
                for member, score in rows:
                    if after and (score, member) <= (after.fetched_at, after.item_key):
                        continue
                    keys.append(member)
                    if len(keys) >= n:
                        break
        except (RedisError, OSError) as e:
            raise StoreUnavailable(f"scan most stale: {e}") from e

        records = await self.get_many(keys)
        return [records[k] for k in keys if k in records]

    async def count(self) -> int:
        try:
            return await self._redis.zcard(INDEX_KEY)
        except (RedisError, OSError) as e:
            raise StoreUnavailable(f"count: {e}") from e

    async def close(self):
        await self._redis.aclose()


def _decode(raw: Optional[str]) -> Optional[PriceRecord]:
    if not raw:
        return None
    try:
        return PriceRecord.from_dict(json.loads(raw))
    except (ValueError, KeyError, TypeError) as e:
        log.warning(f"Corrupt price record skipped: {e}")
        return None
