from __future__ import annotations
import re
from typing import Any, List, Optional, Tuple

import orjson
import redis.asyncio as redis
from redis.exceptions import WatchError

from ...helpers import now_ts
from ._base import KVStore


# ---- keys
def k_kv(key: str) -> str: return f"kv:{key}"


_GLOB_SPECIAL = re.compile(r"([\\*?\[\]])")


def _glob_escape(s: str) -> str:
    return _GLOB_SPECIAL.sub(r"\\\1", s)


class RedisKVStore(KVStore):
    """One hash per key: ``{value, version, updated_at}``.

    Conditional writes use WATCH/MULTI; a concurrent write between WATCH
    and EXEC aborts the transaction and reports a lost race.
    """

    def __init__(self, r: redis.Redis) -> None:
        # expects decode_responses=True
        self.r = r

    async def get_versioned(self, key: str) -> Tuple[Optional[Any], int]:
        h = await self.r.hgetall(k_kv(key))
        if not h:
            return None, 0
        return orjson.loads(h["value"]), int(h.get("version", "0"))

    async def set(self, key: str, value: Any) -> None:
        pipe = self.r.pipeline(transaction=True)
        pipe.hset(k_kv(key), mapping={
            "value": orjson.dumps(value).decode(),
            "updated_at": str(now_ts()),
        })
        pipe.hincrby(k_kv(key), "version", 1)
        await pipe.execute()

    async def compare_and_set(
            self, key: str, value: Any, version: int) -> bool:
        k = k_kv(key)
        async with self.r.pipeline(transaction=True) as pipe:
            try:
                await pipe.watch(k)
                current = await pipe.hget(k, "version")
                if int(current or 0) != version:
                    await pipe.unwatch()
                    return False
                pipe.multi()
                pipe.hset(k, mapping={
                    "value": orjson.dumps(value).decode(),
                    "version": str(version + 1),
                    "updated_at": str(now_ts()),
                })
                await pipe.execute()
            except WatchError:
                return False
        return True

    async def delete(self, key: str) -> None:
        await self.r.delete(k_kv(key))

    async def get_by_prefix(self, prefix: str) -> List[Tuple[str, Any]]:
        pattern = k_kv(_glob_escape(prefix)) + "*"
        keys = sorted([k async for k in self.r.scan_iter(match=pattern)])
        if not keys:
            return []
        pipe = self.r.pipeline()
        for k in keys:
            pipe.hget(k, "value")
        values = await pipe.execute()
        out = []
        for k, v in zip(keys, values):
            # deleted between SCAN and HGET
            if v is None:
                continue
            out.append((k[len("kv:"):], orjson.loads(v)))
        return out
