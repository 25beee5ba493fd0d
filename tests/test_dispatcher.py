"""Tests for the dispatch boundary."""
from unittest.mock import AsyncMock, MagicMock

import pytest

from hookrelay.models.messages import CapturedMessage, DeadLetterMessage, ForwardMessage
from hookrelay.models.webhook import utcnow
from hookrelay.services.dispatcher import ArqDispatcher, LocalDispatcher


class TestArqDispatcher:
    @pytest.fixture
    def pool(self):
        pool = MagicMock()
        pool.enqueue_job = AsyncMock(return_value=MagicMock(job_id="job-1"))
        return pool

    async def test_forward_enqueues_camel_case_payload(self, pool):
        message = ForwardMessage(
            webhook_id="wh_1",
            target_url="https://target.example/",
            headers={"content-type": "application/json"},
            body={"a": 1},
        )

        await ArqDispatcher(pool).forward(message)

        pool.enqueue_job.assert_awaited_once_with("forward_webhook", {
            "webhookId": "wh_1",
            "targetUrl": "https://target.example/",
            "headers": {"content-type": "application/json"},
            "body": {"a": 1},
        })

    async def test_task_per_topic(self, pool):
        dispatcher = ArqDispatcher(pool)

        await dispatcher.captured(CapturedMessage(webhook_id="wh_1", project_id="p1", method="POST", received_at=utcnow()))
        await dispatcher.dead_letter(DeadLetterMessage(webhook_id="wh_1", target_url="https://t.example/", error_message="HTTP 404: Not Found", status_code=404))

        tasks = [c.args[0] for c in pool.enqueue_job.await_args_list]
        assert tasks == ["process_captured_webhook", "handle_dead_letter"]
        assert pool.enqueue_job.await_args_list[1].args[1]["statusCode"] == 404


class TestLocalDispatcher:
    async def test_requires_bind(self):
        dispatcher = LocalDispatcher()
        with pytest.raises(RuntimeError):
            await dispatcher.forward(ForwardMessage(webhook_id="wh_1", target_url="https://t.example/"))

    async def test_handler_errors_are_contained(self):
        dispatcher = LocalDispatcher()
        on_captured = AsyncMock(side_effect=ValueError("boom"))
        dispatcher.bind(on_captured=on_captured, engine=AsyncMock(), on_dead_letter=AsyncMock())

        await dispatcher.captured(CapturedMessage(webhook_id="wh_1", project_id="p1", method="POST", received_at=utcnow()))
        await dispatcher.drain()

        on_captured.assert_awaited_once()
        assert dispatcher.pending == 0
