"""Shared fixtures: in-memory collaborators, a fake delivery target and an API client."""
from datetime import datetime, timedelta, timezone

import httpx
import pytest

from hookrelay.config import Settings
from hookrelay.main import create_app
from hookrelay.models.webhook import WebhookRecord, WebhookStatus
from hookrelay.services.container import create_services


class FakeTarget:
    """
    Outbound delivery target behind httpx.MockTransport.

    Replies with queued status codes (or raises queued exceptions) in order,
    then with ``default``. Every request is recorded.
    """

    def __init__(self, default: int = 200):
        self.default = default
        self.replies: list = []
        self.requests: list[httpx.Request] = []

    def reply(self, *replies):
        self.replies.extend(replies)

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        reply = self.replies.pop(0) if self.replies else self.default
        if isinstance(reply, Exception):
            raise reply
        return httpx.Response(reply)


def make_record(
    webhook_id: str = "wh_1700000000000_test",
    project_id: str = "p1",
    status: WebhookStatus = WebhookStatus.RECEIVED,
    received_at: datetime | None = None,
    **fields,
) -> WebhookRecord:
    """Build a stored-looking record for tests."""
    return WebhookRecord(
        id=webhook_id,
        project_id=project_id,
        method="POST",
        headers=fields.pop("headers", {"content-type": "application/json", "x-signature": "abc"}),
        body=fields.pop("body", {"a": 1}),
        received_at=received_at or datetime(2026, 1, 1, tzinfo=timezone.utc),
        status=status,
        **fields,
    )


def minutes_after_epoch(minutes: int) -> datetime:
    return datetime(2026, 1, 1, tzinfo=timezone.utc) + timedelta(minutes=minutes)


@pytest.fixture
def test_settings() -> Settings:
    return Settings(
        _env_file=None,
        STORE_BACKEND="memory",
        NOTIFIER_BACKEND="memory",
        DISPATCH_MODE="local",
        MAX_DELIVERY_ATTEMPTS=3,
        RETRY_DELAY_SECONDS=0,
        FORWARD_TIMEOUT_SECONDS=5,
    )


@pytest.fixture
def target() -> FakeTarget:
    return FakeTarget()


@pytest.fixture
async def services(test_settings, target):
    services = await create_services(test_settings, transport=httpx.MockTransport(target))
    yield services
    await services.close()


@pytest.fixture
async def client(services):
    app = create_app(services)
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as client:
        yield client
