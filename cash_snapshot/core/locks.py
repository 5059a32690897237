import asyncio
import uuid
from collections import defaultdict
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import AsyncContextManager, Protocol


class ItemLockTimeout(Exception):
    """Another sync for the same item held the lock for too long."""

    def __init__(self, item_id: uuid.UUID):
        super().__init__(f"sync already in progress for item {item_id}")
        self.item_id = item_id


class ItemLocks(Protocol):
    def hold(self, item_id: uuid.UUID) -> AsyncContextManager[None]: ...


class InProcessItemLocks:
    """asyncio locks keyed by item id; enough when one process runs every sync."""

    def __init__(self, wait_seconds: float = 30.0):
        self.wait_seconds = wait_seconds
        self._locks: dict[uuid.UUID, asyncio.Lock] = defaultdict(asyncio.Lock)

    def locked(self, item_id: uuid.UUID) -> bool:
        return item_id in self._locks and self._locks[item_id].locked()

    @asynccontextmanager
    async def hold(self, item_id: uuid.UUID) -> AsyncIterator[None]:
        lock = self._locks[item_id]
        try:
            await asyncio.wait_for(lock.acquire(), timeout=self.wait_seconds)
        except asyncio.TimeoutError:
            raise ItemLockTimeout(item_id) from None
        try:
            yield
        finally:
            lock.release()
