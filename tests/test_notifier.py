"""Tests for the notification fan-out."""
import json
from unittest.mock import AsyncMock, MagicMock

from hookrelay.models.webhook import StatusProjection, WebhookStatus
from hookrelay.services.notifier import (
    FEED_CHANNEL,
    InMemoryStatusNotifier,
    RedisStatusNotifier,
    notify_status,
    project_channel,
)

from conftest import make_record


def projection(status=WebhookStatus.RECEIVED, **fields):
    return StatusProjection.from_record(make_record(status=status, **fields))


class TestInMemoryStatusNotifier:
    async def test_push_replaces_projection_per_channel_and_id(self):
        notifier = InMemoryStatusNotifier()

        await notifier.publish(projection())
        await notifier.publish(projection(WebhookStatus.RETRYING, retry_count=1))

        for channel in (FEED_CHANNEL, project_channel("p1")):
            latest = notifier.latest(channel, "wh_1700000000000_test")
            assert latest.status == WebhookStatus.RETRYING
            assert latest.retry_count == 1
        assert len(notifier.history) == 2

    async def test_projects_are_separated(self):
        notifier = InMemoryStatusNotifier()

        await notifier.publish(projection(project_id="p2"))

        assert notifier.latest(project_channel("p1"), "wh_1700000000000_test") is None
        assert notifier.latest(project_channel("p2"), "wh_1700000000000_test") is not None


class TestRedisStatusNotifier:
    async def test_hset_and_publish_on_both_channels(self):
        pipe = MagicMock()
        pipe.execute = AsyncMock()
        client = MagicMock()
        client.pipeline.return_value.__aenter__.return_value = pipe

        await RedisStatusNotifier(client).publish(projection(WebhookStatus.DLQ, error_message="HTTP 404: Not Found"))

        client.pipeline.assert_called_once_with(transaction=False)
        hset_channels = [c.args[0] for c in pipe.hset.call_args_list]
        publish_channels = [c.args[0] for c in pipe.publish.call_args_list]
        assert hset_channels == [FEED_CHANNEL, "webhook-feed:p1"]
        assert publish_channels == [FEED_CHANNEL, "webhook-feed:p1"]

        payload = json.loads(pipe.publish.call_args_list[0].args[1])
        assert payload["status"] == "dlq"
        assert payload["errorMessage"] == "HTTP 404: Not Found"
        assert payload["projectId"] == "p1"
        pipe.execute.assert_awaited_once()


class TestNotifyStatus:
    async def test_failures_are_swallowed(self):
        notifier = AsyncMock()
        notifier.publish.side_effect = ConnectionError("redis down")

        await notify_status(notifier, make_record())

        notifier.publish.assert_awaited_once()
