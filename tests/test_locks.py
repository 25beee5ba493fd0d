"""Tests for per-webhook locks."""
import asyncio
from unittest.mock import MagicMock

from hookrelay.services.locks import KeyedLocks, RedisKeyedLocks


class TestKeyedLocks:
    async def test_same_id_is_serialized(self):
        locks = KeyedLocks()
        order = []

        async def worker(name):
            async with locks.hold("wh_1"):
                order.append(f"{name}-in")
                await asyncio.sleep(0.01)
                order.append(f"{name}-out")

        await asyncio.gather(worker("a"), worker("b"))

        assert order in (["a-in", "a-out", "b-in", "b-out"], ["b-in", "b-out", "a-in", "a-out"])

    async def test_different_ids_run_concurrently(self):
        locks = KeyedLocks()
        inside = asyncio.Event()

        async def holder():
            async with locks.hold("wh_1"):
                await asyncio.wait_for(inside.wait(), timeout=1)

        async def other():
            async with locks.hold("wh_2"):
                inside.set()

        await asyncio.gather(holder(), other())

    async def test_released_locks_are_pruned(self):
        locks = KeyedLocks()

        async with locks.hold("wh_1"):
            assert len(locks) == 1

        assert len(locks) == 0


class TestRedisKeyedLocks:
    async def test_uses_named_lock_with_lease(self):
        client = MagicMock()

        async with RedisKeyedLocks(client, timeout=40).hold("wh_1"):
            pass

        client.lock.assert_called_once_with("hookrelay:lock:wh_1", timeout=40, blocking_timeout=40)
        client.lock.return_value.__aenter__.assert_awaited_once()
