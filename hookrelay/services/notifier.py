"""
Notification fan-out.

Pushes a status projection to the global feed channel and to the
per-project channel. Each push replaces the projection stored for
(channel, webhook id). Delivery to observers is fire-and-forget.
"""
import json
from typing import Protocol

import redis.asyncio as redis

from hookrelay.logging_config import get_logger
from hookrelay.models.webhook import StatusProjection, WebhookRecord
from hookrelay.sentry_config import capture_exception

log = get_logger(component="notifier")

FEED_CHANNEL = "webhook-feed"


def project_channel(project_id: str) -> str:
    return f"{FEED_CHANNEL}:{project_id}"


def channels_for(projection: StatusProjection) -> tuple[str, str]:
    return FEED_CHANNEL, project_channel(projection.project_id)


class StatusNotifier(Protocol):
    async def publish(self, projection: StatusProjection) -> None: ...


class RedisStatusNotifier:
    """
    Keeps the latest projection per webhook in a hash named after the channel
    and publishes it on the pub/sub channel of the same name.
    """

    def __init__(self, client: redis.Redis):
        self.client = client

    async def publish(self, projection: StatusProjection) -> None:
        payload = json.dumps(projection.to_wire())
        async with self.client.pipeline(transaction=False) as pipe:
            for channel in channels_for(projection):
                pipe.hset(channel, projection.id, payload)
                pipe.publish(channel, payload)
            await pipe.execute()


class InMemoryStatusNotifier:
    """Notifier for tests and single-process development."""

    def __init__(self):
        self.channels: dict[str, dict[str, StatusProjection]] = {}
        self.history: list[StatusProjection] = []

    async def publish(self, projection: StatusProjection) -> None:
        for channel in channels_for(projection):
            self.channels.setdefault(channel, {})[projection.id] = projection
        self.history.append(projection)

    def latest(self, channel: str, webhook_id: str) -> StatusProjection | None:
        return self.channels.get(channel, {}).get(webhook_id)


async def notify_status(notifier: StatusNotifier, record: WebhookRecord) -> None:
    """
    Publish the record's projection. Best-effort: a failing feed is logged
    and reported, never raised, and never undoes the persisted state.
    """
    try:
        await notifier.publish(StatusProjection.from_record(record))
    except Exception as e:
        log.warning("status_notification_failed", webhook_id=record.id, error=str(e))
        capture_exception(e)
