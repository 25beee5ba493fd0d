"""Tests for the delivery engine: header reduction, classification and transitions."""
import asyncio
import json
from unittest.mock import AsyncMock

import httpx
import pytest

from hookrelay.errors import RecordMissingError, TransientDeliveryError
from hookrelay.models.messages import ForwardMessage
from hookrelay.models.webhook import WebhookStatus
from hookrelay.services.delivery_engine import (
    DeliveryEngine,
    DeliveryOutcome,
    build_forward_headers,
    classify_response,
)
from hookrelay.services.locks import KeyedLocks
from hookrelay.services.notifier import FEED_CHANNEL, InMemoryStatusNotifier, project_channel
from hookrelay.services.webhook_store import InMemoryWebhookStore

from conftest import FakeTarget, make_record

TARGET_URL = "https://target.example/hook"


class RecordingDispatcher:
    """Collects dispatched messages instead of running them."""

    def __init__(self):
        self.captured = AsyncMock()
        self.forward = AsyncMock()
        self.dead_letters = []

    async def dead_letter(self, message):
        self.dead_letters.append(message)


@pytest.fixture
def store():
    return InMemoryWebhookStore()


@pytest.fixture
def notifier():
    return InMemoryStatusNotifier()


@pytest.fixture
def dispatcher():
    return RecordingDispatcher()


@pytest.fixture
def engine(store, notifier, dispatcher, target):
    return DeliveryEngine(
        store=store,
        notifier=notifier,
        dispatcher=dispatcher,
        locks=KeyedLocks(),
        transport=httpx.MockTransport(target),
    )


async def stored(store, **fields):
    record = make_record(**fields)
    await store.set(record)
    return record


def forward_for(record, target_url=TARGET_URL):
    return ForwardMessage.for_record(record, target_url)


class TestBuildForwardHeaders:
    """Only Content-Type survives."""

    def test_keeps_only_content_type(self):
        headers = {
            "content-type": "application/json",
            "host": "relay.example",
            "content-length": "12",
            "x-hub-signature-256": "sha256=abc",
        }
        assert build_forward_headers(headers) == {"Content-Type": "application/json"}

    def test_lookup_is_case_insensitive(self):
        assert build_forward_headers({"Content-Type": "text/plain"}) == {"Content-Type": "text/plain"}

    def test_multi_valued_takes_first(self):
        headers = {"content-type": ["application/json", "text/plain"]}
        assert build_forward_headers(headers) == {"Content-Type": "application/json"}

    def test_no_content_type(self):
        assert build_forward_headers({"x-custom": "1"}) == {}
        assert build_forward_headers({"content-type": []}) == {}


class TestClassifyResponse:
    @pytest.mark.parametrize("status", [200, 201, 204, 301, 302])
    def test_ok(self, status):
        assert classify_response(httpx.Response(status)) is None

    def test_client_error_is_permanent(self):
        failure = classify_response(httpx.Response(404))
        assert not isinstance(failure, TransientDeliveryError)
        assert failure.message == "HTTP 404: Not Found"
        assert failure.response_status == 404

    def test_server_error_is_transient(self):
        failure = classify_response(httpx.Response(503))
        assert isinstance(failure, TransientDeliveryError)
        assert failure.message == "HTTP 503: Service Unavailable"


class TestAttempt:
    """One attempt against the fake target."""

    async def test_success_forwards(self, engine, store, target):
        record = await stored(store, retry_count=1)

        outcome = await engine.attempt(forward_for(record))

        assert outcome is DeliveryOutcome.FORWARDED
        saved = await store.get(record.id)
        assert saved.status == WebhookStatus.FORWARDED
        assert saved.forwarded_at is not None
        assert saved.target_url == TARGET_URL
        assert saved.retry_count == 1
        assert len(target.requests) == 1

    async def test_request_carries_body_and_only_content_type(self, engine, store, target):
        record = await stored(store, headers={
            "content-type": "application/json",
            "x-signature": "abc",
            "authorization": "Bearer secret",
        })

        await engine.attempt(forward_for(record))

        request = target.requests[0]
        assert request.method == "POST"
        assert str(request.url) == TARGET_URL
        assert json.loads(request.content) == {"a": 1}
        assert request.headers["content-type"] == "application/json"
        assert "x-signature" not in request.headers
        assert "authorization" not in request.headers

    async def test_client_error_dead_letters(self, engine, store, target, dispatcher):
        target.reply(404)
        record = await stored(store)

        outcome = await engine.attempt(forward_for(record))

        assert outcome is DeliveryOutcome.DLQ
        saved = await store.get(record.id)
        assert saved.status == WebhookStatus.DLQ
        assert "404" in saved.error_message
        assert saved.dlq_at is not None
        assert saved.forwarded_at is not None
        assert saved.retry_count == 0

        assert len(dispatcher.dead_letters) == 1
        dead = dispatcher.dead_letters[0]
        assert dead.webhook_id == record.id
        assert dead.status_code == 404
        assert dead.target_url == TARGET_URL

    async def test_server_error_moves_to_retrying_and_raises(self, engine, store, target, dispatcher):
        target.reply(503)
        record = await stored(store)

        with pytest.raises(TransientDeliveryError):
            await engine.attempt(forward_for(record))

        saved = await store.get(record.id)
        assert saved.status == WebhookStatus.RETRYING
        assert saved.retry_count == 1
        assert saved.last_retry_at is not None
        assert saved.error_message == "HTTP 503: Service Unavailable"
        assert saved.target_url == TARGET_URL
        assert dispatcher.dead_letters == []

    async def test_network_error_is_transient(self, engine, store, target):
        target.reply(httpx.ConnectError("connection refused"))
        record = await stored(store)

        with pytest.raises(TransientDeliveryError):
            await engine.attempt(forward_for(record))

        saved = await store.get(record.id)
        assert saved.status == WebhookStatus.RETRYING
        assert saved.error_message == "connection refused"

    async def test_timeout_is_transient(self, engine, store, target):
        target.reply(httpx.ReadTimeout("timed out"))
        record = await stored(store)

        with pytest.raises(TransientDeliveryError):
            await engine.attempt(forward_for(record))

        assert (await store.get(record.id)).status == WebhookStatus.RETRYING

    async def test_slow_body_is_cut_off_at_timeout(self, store, notifier, dispatcher):
        async def trickle():
            for _ in range(20):
                await asyncio.sleep(0.05)
                yield b"."

        async def slow_body(request):
            return httpx.Response(200, content=trickle())

        engine = DeliveryEngine(
            store, notifier, dispatcher, KeyedLocks(),
            timeout=0.1,
            transport=httpx.MockTransport(slow_body),
        )
        record = await stored(store)

        started = asyncio.get_running_loop().time()
        with pytest.raises(TransientDeliveryError, match="timed out"):
            await engine.attempt(forward_for(record))

        assert asyncio.get_running_loop().time() - started < 0.5
        saved = await store.get(record.id)
        assert saved.status == WebhookStatus.RETRYING
        assert saved.error_message == "Request timed out after 0.1s"

    async def test_final_attempt_escalates_transient_to_dlq(self, engine, store, target, dispatcher):
        target.reply(503)
        record = await stored(store, status=WebhookStatus.RETRYING, retry_count=2)

        outcome = await engine.attempt(forward_for(record), final_attempt=True, scheduled_retry=True)

        assert outcome is DeliveryOutcome.DLQ
        saved = await store.get(record.id)
        assert saved.status == WebhookStatus.DLQ
        assert saved.retry_count == 2
        assert saved.error_message == "HTTP 503: Service Unavailable"
        assert dispatcher.dead_letters[0].status_code == 503

    async def test_final_attempt_network_error_reports_status_zero(self, engine, store, target, dispatcher):
        target.reply(httpx.ConnectError("connection refused"))
        record = await stored(store)

        await engine.attempt(forward_for(record), final_attempt=True)

        assert dispatcher.dead_letters[0].status_code == 0

    async def test_missing_record_aborts_without_request(self, engine, store, target):
        record = make_record()

        with pytest.raises(RecordMissingError):
            await engine.attempt(forward_for(record))

        assert target.requests == []
        assert await store.get(record.id) is None

    @pytest.mark.parametrize("status", [WebhookStatus.FORWARDED, WebhookStatus.DLQ])
    async def test_scheduled_retry_skips_terminal_record(self, engine, store, target, status):
        record = await stored(store, status=status, target_url="https://other.example/")

        outcome = await engine.attempt(forward_for(record), scheduled_retry=True)

        assert outcome is DeliveryOutcome.SKIPPED
        assert target.requests == []
        assert (await store.get(record.id)).status == status

    async def test_first_attempt_rearms_terminal_record(self, engine, store, target):
        record = await stored(store, status=WebhookStatus.DLQ, error_message="HTTP 404: Not Found")

        outcome = await engine.attempt(forward_for(record, "https://new.example/hook"))

        assert outcome is DeliveryOutcome.FORWARDED
        saved = await store.get(record.id)
        assert saved.target_url == "https://new.example/hook"
        assert saved.error_message is None


class TestNotification:
    """Projection pushed after persistence, best-effort."""

    async def test_projection_on_both_channels(self, engine, store, notifier):
        record = await stored(store, project_id="p7")

        await engine.attempt(forward_for(record))

        for channel in (FEED_CHANNEL, project_channel("p7")):
            projection = notifier.latest(channel, record.id)
            assert projection.status == WebhookStatus.FORWARDED
            assert projection.target_url == TARGET_URL

    async def test_persisted_before_notified(self, store, dispatcher, target):
        seen = []

        class CheckingNotifier:
            async def publish(self, projection):
                seen.append((projection.status, (await store.get(projection.id)).status))

        engine = DeliveryEngine(store, CheckingNotifier(), dispatcher, KeyedLocks(), transport=httpx.MockTransport(target))
        record = await stored(store)

        await engine.attempt(forward_for(record))

        assert seen == [(WebhookStatus.FORWARDED, WebhookStatus.FORWARDED)]

    async def test_notification_failure_does_not_undo_state(self, store, dispatcher, target):
        notifier = AsyncMock()
        notifier.publish.side_effect = ConnectionError("feed down")
        engine = DeliveryEngine(store, notifier, dispatcher, KeyedLocks(), transport=httpx.MockTransport(target))
        record = await stored(store)

        outcome = await engine.attempt(forward_for(record))

        assert outcome is DeliveryOutcome.FORWARDED
        assert (await store.get(record.id)).status == WebhookStatus.FORWARDED

    async def test_dead_letter_dispatch_failure_is_swallowed(self, store, notifier, target):
        dispatcher = AsyncMock()
        dispatcher.dead_letter.side_effect = ConnectionError("queue down")
        engine = DeliveryEngine(store, notifier, dispatcher, KeyedLocks(), transport=httpx.MockTransport(target))
        target.reply(410)
        record = await stored(store)

        outcome = await engine.attempt(forward_for(record))

        assert outcome is DeliveryOutcome.DLQ
        assert (await store.get(record.id)).status == WebhookStatus.DLQ


class TestPerWebhookExclusion:
    async def test_attempts_for_one_id_do_not_overlap(self, store, notifier, dispatcher):
        in_flight = 0
        peak = 0

        async def slow_target(request):
            nonlocal in_flight, peak
            in_flight += 1
            peak = max(peak, in_flight)
            await asyncio.sleep(0.01)
            in_flight -= 1
            return httpx.Response(503)

        engine = DeliveryEngine(store, notifier, dispatcher, KeyedLocks(), transport=httpx.MockTransport(slow_target))
        record = await stored(store)

        results = await asyncio.gather(
            *(engine.attempt(forward_for(record)) for _ in range(3)),
            return_exceptions=True,
        )

        assert peak == 1
        assert all(isinstance(r, TransientDeliveryError) for r in results)
        # No lost updates: each attempt saw the previous one's write
        assert (await store.get(record.id)).retry_count == 3
