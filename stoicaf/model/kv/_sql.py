from __future__ import annotations
from typing import Any, Callable, AsyncContextManager, List, Optional, Tuple

import orjson
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, AsyncConnection

from ...helpers import now_ts
from ._base import KVStore


# -----------------------------------------------------------------------------
# DDL (idempotent)
# -----------------------------------------------------------------------------
SQL_CREATE_KV_STORE = r"""
CREATE TABLE IF NOT EXISTS kv_store (
  key        TEXT PRIMARY KEY,
  value      TEXT NOT NULL,
  version    INTEGER NOT NULL,
  updated_at DOUBLE PRECISION NOT NULL
);
"""


async def create_schema(db_or_conn: AsyncSession | AsyncConnection):
    await db_or_conn.execute(text(SQL_CREATE_KV_STORE))


def _dumps(value: Any) -> str:
    return orjson.dumps(value).decode()


class SqlKVStore(KVStore):
    def __init__(
        self, *, db: AsyncSession,
        gated: Callable[[], AsyncContextManager[None]]
    ) -> None:
        self.db = db
        self.gated = gated

    async def get_versioned(self, key: str) -> Tuple[Optional[Any], int]:
        async with self.gated():
            async with self.db.begin():
                row = (await self.db.execute(text("""
                  SELECT value, version FROM kv_store WHERE key=:k
                """), {"k": key})).first()
        if row is None:
            return None, 0
        return orjson.loads(row[0]), int(row[1])

    async def set(self, key: str, value: Any) -> None:
        async with self.gated():
            async with self.db.begin():
                await self.db.execute(text("""
                  INSERT INTO kv_store(key, value, version, updated_at)
                  VALUES(:k, :v, 1, :t)
                  ON CONFLICT (key) DO UPDATE SET
                    value=EXCLUDED.value,
                    version=kv_store.version + 1,
                    updated_at=EXCLUDED.updated_at
                """), {"k": key, "v": _dumps(value), "t": now_ts()})

    async def compare_and_set(
            self, key: str, value: Any, version: int) -> bool:
        params = {"k": key, "v": _dumps(value), "t": now_ts(),
                  "ver": version}
        async with self.gated():
            async with self.db.begin():
                if version == 0:
                    row = (await self.db.execute(text("""
                      INSERT INTO kv_store(key, value, version, updated_at)
                      VALUES(:k, :v, 1, :t)
                      ON CONFLICT (key) DO NOTHING
                      RETURNING key
                    """), params)).first()
                else:
                    row = (await self.db.execute(text("""
                      UPDATE kv_store
                      SET value=:v, version=version + 1, updated_at=:t
                      WHERE key=:k AND version=:ver
                      RETURNING key
                    """), params)).first()
        return row is not None

    async def delete(self, key: str) -> None:
        async with self.gated():
            async with self.db.begin():
                await self.db.execute(
                    text("DELETE FROM kv_store WHERE key=:k"), {"k": key}
                )

    async def get_by_prefix(self, prefix: str) -> List[Tuple[str, Any]]:
        # substr keeps the match exact and case-sensitive on both sqlite
        # and postgres, unlike LIKE
        async with self.gated():
            async with self.db.begin():
                rows = (await self.db.execute(text("""
                  SELECT key, value FROM kv_store
                  WHERE substr(key, 1, :n) = :p
                  ORDER BY key
                """), {"n": len(prefix), "p": prefix})).all()
        return [(r[0], orjson.loads(r[1])) for r in rows]

    async def delete_by_prefix(self, prefix: str) -> int:
        async with self.gated():
            async with self.db.begin():
                result = await self.db.execute(text("""
                  DELETE FROM kv_store WHERE substr(key, 1, :n) = :p
                """), {"n": len(prefix), "p": prefix})
        return int(result.rowcount or 0)
