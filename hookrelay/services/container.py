"""
Service wiring.

Builds the store, notifier, dispatcher, locks, delivery engine and relay
service from settings. The API and the worker both start from here; tests
pass in-memory collaborators.
"""
from dataclasses import dataclass
from typing import Optional

import httpx
import redis.asyncio as redis
from arq import ArqRedis, create_pool
from arq.connections import RedisSettings

from hookrelay.config import Settings, settings as default_settings
from hookrelay.logging_config import get_logger
from hookrelay.services.dead_letter import DeadLetterHandler
from hookrelay.services.delivery_engine import DeliveryEngine
from hookrelay.services.dispatcher import ArqDispatcher, Dispatcher, LocalDispatcher
from hookrelay.services.locks import KeyedLocks, RedisKeyedLocks, WebhookLocks
from hookrelay.services.notifier import InMemoryStatusNotifier, RedisStatusNotifier, StatusNotifier
from hookrelay.services.relay_service import RelayService
from hookrelay.services.retry_scheduler import RetryPolicy
from hookrelay.services.webhook_store import InMemoryWebhookStore, SqlWebhookStore, WebhookStore

log = get_logger(component="container")


@dataclass
class RelayServices:
    """Everything a request handler or worker task needs."""
    store: WebhookStore
    notifier: StatusNotifier
    dispatcher: Dispatcher
    locks: WebhookLocks
    retry_policy: RetryPolicy
    delivery_engine: DeliveryEngine
    relay_service: RelayService
    dead_letter_handler: DeadLetterHandler
    redis_client: Optional[redis.Redis] = None
    owns_redis: bool = False

    async def close(self):
        if isinstance(self.dispatcher, LocalDispatcher):
            await self.dispatcher.close()
        if self.redis_client is not None and self.owns_redis:
            await self.redis_client.aclose()


def _default_store(config: Settings) -> WebhookStore:
    if config.STORE_BACKEND == "memory":
        return InMemoryWebhookStore()
    # Imported lazily so memory-only setups never create a database engine
    from hookrelay.database import AsyncSessionLocal
    return SqlWebhookStore(AsyncSessionLocal)


async def create_services(
    config: Settings = default_settings,
    *,
    redis_client: Optional[redis.Redis] = None,
    store: Optional[WebhookStore] = None,
    notifier: Optional[StatusNotifier] = None,
    dispatcher: Optional[Dispatcher] = None,
    locks: Optional[WebhookLocks] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> RelayServices:
    """
    Build the relay services.

    Args:
        config: Settings selecting the backends
        redis_client: Existing Redis/ARQ connection (the worker passes its own)
        store, notifier, dispatcher, locks: Explicit collaborators override
            the ones selected by settings
        transport: httpx transport for outbound delivery (tests use MockTransport)
    """
    policy = RetryPolicy.from_settings(config)
    owns_redis = False

    needs_redis = (
        (notifier is None and config.NOTIFIER_BACKEND == "redis")
        or (dispatcher is None and config.DISPATCH_MODE == "arq")
        or (locks is None and config.DISPATCH_MODE == "arq")
    )
    if redis_client is None and needs_redis:
        if config.DISPATCH_MODE == "arq":
            redis_client = await create_pool(RedisSettings.from_dsn(config.REDIS_URL))
        else:
            redis_client = redis.from_url(config.REDIS_URL)
        owns_redis = True

    if store is None:
        store = _default_store(config)

    if notifier is None:
        if config.NOTIFIER_BACKEND == "memory":
            notifier = InMemoryStatusNotifier()
        else:
            notifier = RedisStatusNotifier(redis_client)

    if dispatcher is None:
        if config.DISPATCH_MODE == "local":
            dispatcher = LocalDispatcher(policy)
        else:
            if not isinstance(redis_client, ArqRedis):
                raise ValueError("DISPATCH_MODE=arq needs an ArqRedis connection")
            dispatcher = ArqDispatcher(redis_client)

    if locks is None:
        if config.DISPATCH_MODE == "local":
            locks = KeyedLocks()
        else:
            locks = RedisKeyedLocks(redis_client, timeout=config.LOCK_TIMEOUT_SECONDS)

    engine = DeliveryEngine(
        store=store,
        notifier=notifier,
        dispatcher=dispatcher,
        locks=locks,
        timeout=config.FORWARD_TIMEOUT_SECONDS,
        transport=transport,
    )
    relay_service = RelayService(store=store, notifier=notifier, dispatcher=dispatcher, locks=locks)
    dead_letter_handler = DeadLetterHandler()

    if isinstance(dispatcher, LocalDispatcher):
        dispatcher.bind(
            on_captured=relay_service.store_captured,
            engine=engine,
            on_dead_letter=dead_letter_handler.handle,
        )

    log.info(
        "services_created",
        store=type(store).__name__,
        notifier=type(notifier).__name__,
        dispatcher=type(dispatcher).__name__,
        max_tries=policy.max_tries,
        retry_delay=policy.delay_seconds,
        backoff=policy.backoff,
    )

    return RelayServices(
        store=store,
        notifier=notifier,
        dispatcher=dispatcher,
        locks=locks,
        retry_policy=policy,
        delivery_engine=engine,
        relay_service=relay_service,
        dead_letter_handler=dead_letter_handler,
        redis_client=redis_client,
        owns_redis=owns_redis,
    )
