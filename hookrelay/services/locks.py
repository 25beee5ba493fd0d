"""
Per-webhook mutual exclusion.

Every read-modify-write of a webhook record during delivery or manual
retry happens while holding the lock for its id, so state transitions for
one webhook are linearized.
"""
import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator, Protocol

import redis.asyncio as redis

LOCK_PREFIX = "hookrelay:lock:"


class WebhookLocks(Protocol):
    def hold(self, webhook_id: str): ...


class KeyedLocks:
    """In-process asyncio locks keyed by webhook id. Idle entries are pruned."""

    def __init__(self):
        self._locks: dict[str, asyncio.Lock] = {}
        self._waiters: dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, webhook_id: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(webhook_id, asyncio.Lock())
        self._waiters[webhook_id] = self._waiters.get(webhook_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._waiters[webhook_id] -= 1
            if self._waiters[webhook_id] == 0:
                del self._waiters[webhook_id]
                del self._locks[webhook_id]

    def __len__(self):
        return len(self._locks)


class RedisKeyedLocks:
    """
    Redis-backed locks shared by API processes and workers.

    The lease must outlive one outbound HTTP call, so it is set well above the
    forward timeout.
    """

    def __init__(self, client: redis.Redis, timeout: float = 30.0, blocking_timeout: float | None = None):
        self.client = client
        self.timeout = timeout
        self.blocking_timeout = blocking_timeout if blocking_timeout is not None else timeout

    @asynccontextmanager
    async def hold(self, webhook_id: str) -> AsyncIterator[None]:
        lock = self.client.lock(
            f"{LOCK_PREFIX}{webhook_id}",
            timeout=self.timeout,
            blocking_timeout=self.blocking_timeout,
        )
        async with lock:
            yield
