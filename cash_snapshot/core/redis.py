import logging
import uuid
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import redis.asyncio as aioredis
from redis.exceptions import LockError

from cash_snapshot.core.config import settings
from cash_snapshot.core.locks import ItemLockTimeout

logger = logging.getLogger(__name__)

# Shared async Redis client (created lazily, reused across requests)
_redis: aioredis.Redis | None = None


def new_redis() -> aioredis.Redis:
    """Unshared client, for callers that run their own event loop (Celery tasks)."""
    return aioredis.from_url(settings.redis_url, decode_responses=True)


def get_redis() -> aioredis.Redis:
    global _redis
    if _redis is None:
        _redis = new_redis()
    return _redis


# ─── Per-item sync lock ────────────────────────────────────────────────────────

_SYNC_LOCK_PREFIX = "sync_lock:item:"


class RedisItemLocks:
    """Cross-process mutual exclusion for item syncs (API workers + Celery)."""

    def __init__(self, client: aioredis.Redis, timeout_seconds: int, wait_seconds: float):
        self.client = client
        self.timeout_seconds = timeout_seconds   # auto-expiry if the holder dies
        self.wait_seconds = wait_seconds

    @asynccontextmanager
    async def hold(self, item_id: uuid.UUID) -> AsyncIterator[None]:
        lock = self.client.lock(
            f"{_SYNC_LOCK_PREFIX}{item_id}",
            timeout=self.timeout_seconds,
            blocking_timeout=self.wait_seconds,
        )
        if not await lock.acquire():
            raise ItemLockTimeout(item_id)
        try:
            yield
        finally:
            try:
                await lock.release()
            except LockError:
                logger.warning("Sync lock for item %s expired before release", item_id)
