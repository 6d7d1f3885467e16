from __future__ import annotations
import copy
import logging
import os
from abc import ABC, abstractmethod
from typing import Any, Callable, List, Optional, Tuple

from ...errors import WriteConflict

log = logging.getLogger(__name__)

MAX_RETRIES = int(os.getenv("KV_MAX_RETRIES", "5"))

Mutator = Callable[[Any], Any]


class KVStore(ABC):
    """Versioned key-value store of JSON values.

    A missing key has version 0. Every successful write bumps the version
    by one, so ``compare_and_set(key, value, version)`` only lands if no
    other writer touched the key since it was read.
    """

    @abstractmethod
    async def get_versioned(self, key: str) -> Tuple[Optional[Any], int]:
        ...

    @abstractmethod
    async def set(self, key: str, value: Any) -> None:
        ...

    @abstractmethod
    async def compare_and_set(
            self, key: str, value: Any, version: int) -> bool:
        ...

    @abstractmethod
    async def delete(self, key: str) -> None:
        ...

    @abstractmethod
    async def get_by_prefix(self, prefix: str) -> List[Tuple[str, Any]]:
        ...

    async def get(self, key: str) -> Optional[Any]:
        value, _ = await self.get_versioned(key)
        return value

    async def set_if_absent(self, key: str, value: Any) -> bool:
        # True if we created the key, False if it already existed
        return await self.compare_and_set(key, value, 0)

    async def delete_by_prefix(self, prefix: str) -> int:
        rows = await self.get_by_prefix(prefix)
        for key, _ in rows:
            await self.delete(key)
        return len(rows)

    async def update(
        self,
        key: str,
        fn: Mutator,
        *,
        default: Optional[Callable[[], Any]] = None,
        retries: Optional[int] = None,
    ) -> Tuple[Optional[Any], Any]:
        """Optimistic read-modify-write.

        ``fn`` receives the current value (or ``default()`` when the key
        is missing) and returns the new value. It may raise to abort; in
        that case nothing is written. ``fn`` gets a private copy it may
        mutate in place; it can run more than once, so it must not have
        side effects. Returns ``(old, new)``.
        """
        attempts = retries or MAX_RETRIES
        for attempt in range(1, attempts + 1):
            current, version = await self.get_versioned(key)
            if current is None and default is not None:
                current = default()
            new = fn(copy.deepcopy(current))
            if new == current and version > 0:
                return current, new
            if await self.compare_and_set(key, new, version):
                return current, new
            log.info("kv write conflict on %s (attempt %d/%d)",
                     key, attempt, attempts)
        raise WriteConflict()
