import asyncio
import uuid
from unittest.mock import AsyncMock, MagicMock

import pytest
from redis.exceptions import LockError

from cash_snapshot.core.locks import InProcessItemLocks, ItemLockTimeout
from cash_snapshot.core.redis import RedisItemLocks


class TestInProcessItemLocks:
    async def test_different_items_do_not_block(self):
        locks = InProcessItemLocks(wait_seconds=0.01)
        a, b = uuid.uuid4(), uuid.uuid4()
        async with locks.hold(a):
            async with locks.hold(b):
                assert locks.locked(a) and locks.locked(b)
        assert not locks.locked(a)

    async def test_same_item_times_out(self):
        locks = InProcessItemLocks(wait_seconds=0.01)
        item = uuid.uuid4()
        async with locks.hold(item):
            with pytest.raises(ItemLockTimeout):
                async with locks.hold(item):
                    pass

    async def test_waiter_gets_lock_after_release(self):
        locks = InProcessItemLocks(wait_seconds=1)
        item = uuid.uuid4()
        order = []

        async def worker(name):
            async with locks.hold(item):
                order.append(f"{name}-in")
                await asyncio.sleep(0.01)
                order.append(f"{name}-out")

        await asyncio.gather(worker("a"), worker("b"))
        assert order == ["a-in", "a-out", "b-in", "b-out"]


class TestRedisItemLocks:
    def _client(self, acquired=True, release_error=None):
        lock = MagicMock()
        lock.acquire = AsyncMock(return_value=acquired)
        lock.release = AsyncMock(side_effect=release_error)
        client = MagicMock()
        client.lock.return_value = lock
        return client, lock

    async def test_acquire_and_release(self):
        client, lock = self._client()
        item = uuid.uuid4()
        async with RedisItemLocks(client, timeout_seconds=600, wait_seconds=5).hold(item):
            pass
        client.lock.assert_called_once_with(f"sync_lock:item:{item}", timeout=600, blocking_timeout=5)
        lock.release.assert_awaited_once()

    async def test_not_acquired(self):
        client, lock = self._client(acquired=False)
        with pytest.raises(ItemLockTimeout):
            async with RedisItemLocks(client, timeout_seconds=600, wait_seconds=0).hold(uuid.uuid4()):
                pass
        lock.release.assert_not_called()

    async def test_expired_lock_release_is_logged(self, caplog):
        client, _ = self._client(release_error=LockError("expired"))
        async with RedisItemLocks(client, timeout_seconds=1, wait_seconds=1).hold(uuid.uuid4()):
            pass
        assert "expired before release" in caplog.text
