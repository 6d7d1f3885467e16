# model/kv/__init__.py
import os
from typing import Optional, Callable, AsyncContextManager
from sqlalchemy.ext.asyncio import AsyncSession
import redis.asyncio as redis

from ._base import KVStore

Gated = Callable[[], AsyncContextManager[None]]

BACKEND = os.getenv("KV_BACKEND", "sql").lower()  # 'sql' | 'redis'

if BACKEND == "redis":
    from ._redis import RedisKVStore as _KVStore
else:
    from ._sql import SqlKVStore as _KVStore


# Factory keeps server.py simple and constructor-agnostic:
def new_store(*, db: Optional[AsyncSession] = None,
              r: Optional[redis.Redis] = None,
              gated: Gated = None) -> KVStore:
    if BACKEND == "redis":
        if r is None:
            raise RuntimeError("KVStore(redis) requires r=redis.Redis")
        return _KVStore(r=r)
    if db is None:
        raise RuntimeError("KVStore(sql) requires db=AsyncSession")
    if gated is None:
        raise RuntimeError("KVStore(sql) requires gated=Gated")
    return _KVStore(db=db, gated=gated)


__all__ = ["KVStore", "new_store", "BACKEND"]
