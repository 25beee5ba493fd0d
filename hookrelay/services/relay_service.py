"""
Relay service: the entry points that start or restart a delivery cycle.

capture       -> new record in RECEIVED, persisted asynchronously
replay        -> re-send a stored payload to a (possibly new) target URL
manual_retry  -> re-send to the last used target URL

Every entry point hands off through the dispatcher and returns without
waiting for the delivery outcome.
"""
from typing import Any, Optional

from pydantic import HttpUrl, TypeAdapter, ValidationError

from hookrelay.errors import InvalidInputError, InvalidStateError, WebhookNotFoundError
from hookrelay.logging_config import get_logger
from hookrelay.models.messages import CapturedMessage, ForwardMessage
from hookrelay.models.webhook import (
    FAILED_STATUSES,
    HeaderValue,
    WebhookRecord,
    generate_webhook_id,
    utcnow,
)
from hookrelay.routes.metrics import track_capture, track_replay
from hookrelay.sentry_config import capture_exception
from hookrelay.services.dispatcher import Dispatcher
from hookrelay.services.locks import WebhookLocks
from hookrelay.services.notifier import StatusNotifier, notify_status
from hookrelay.services.state_machine import mark_retrying
from hookrelay.services.webhook_store import WebhookStore

_http_url = TypeAdapter(HttpUrl)


def validate_target_url(target_url: str) -> str:
    """Return ``target_url`` unchanged if it is an absolute http(s) URL."""
    try:
        _http_url.validate_python(target_url)
    except ValidationError:
        raise InvalidInputError(f"Invalid target URL: {target_url!r}") from None
    return target_url


class RelayService:
    """Capture, replay and manual retry of webhooks."""

    def __init__(
        self,
        store: WebhookStore,
        notifier: StatusNotifier,
        dispatcher: Dispatcher,
        locks: WebhookLocks,
    ):
        self.store = store
        self.notifier = notifier
        self.dispatcher = dispatcher
        self.locks = locks

    async def capture(
        self,
        project_id: str,
        method: str,
        headers: dict[str, HeaderValue],
        body: Any,
    ) -> str:
        """
        Accept an inbound webhook.

        The record is persisted by the webhook-captured handler, not here, so
        the caller never waits on the store.

        Args:
            project_id: Caller-supplied partition key
            method: HTTP method of the inbound request
            headers: Inbound headers, verbatim
            body: Decoded inbound body

        Returns:
            The new webhook id
        """
        webhook_id = generate_webhook_id()
        log = get_logger(webhook_id=webhook_id, project_id=project_id)

        message = CapturedMessage(
            webhook_id=webhook_id,
            project_id=project_id,
            method=method,
            headers=headers,
            body=body,
            received_at=utcnow(),
        )

        # Capture always accepts; a queue outage is logged and reported
        try:
            await self.dispatcher.captured(message)
        except Exception as e:
            log.error("capture_dispatch_failed", error=str(e))
            capture_exception(e)
        else:
            log.info("webhook_captured")

        track_capture(project_id)
        return webhook_id

    async def store_captured(self, message: CapturedMessage) -> WebhookRecord:
        """
        Persist a captured webhook as RECEIVED.

        Redelivery of the same webhook-captured message leaves the existing
        record untouched.
        """
        log = get_logger(webhook_id=message.webhook_id, project_id=message.project_id)

        async with self.locks.hold(message.webhook_id):
            existing = await self.store.get(message.webhook_id)
            if existing is not None:
                log.info("duplicate_capture_ignored", status=existing.status.value)
                return existing

            record = message.to_record()
            await self.store.set(record)
            await notify_status(self.notifier, record)

        log.info("webhook_stored")
        return record

    async def replay(self, webhook_id: str, target_url: str) -> None:
        """
        Re-send a stored webhook to ``target_url``.

        The record is not touched here; the first delivery attempt applies
        the status change.

        Raises:
            InvalidInputError: target_url is not an absolute http(s) URL
            WebhookNotFoundError: No record for webhook_id
        """
        validate_target_url(target_url)
        record = await self.get_webhook(webhook_id)

        await self.dispatcher.forward(ForwardMessage.for_record(record, target_url))

        get_logger(webhook_id=webhook_id, target_url=target_url).info("webhook_replay_accepted")
        track_replay("replay")

    async def manual_retry(self, webhook_id: str) -> WebhookRecord:
        """
        Re-send a webhook to the target URL it was last forwarded to.

        Raises:
            WebhookNotFoundError: No record for webhook_id
            InvalidStateError: The webhook was never forwarded
        """
        log = get_logger(webhook_id=webhook_id)

        async with self.locks.hold(webhook_id):
            record = await self.get_webhook(webhook_id)

            if not record.target_url:
                log.warning("manual_retry_without_target")
                raise InvalidStateError("Webhook has no target URL to retry")

            # Dispatch before marking: a failed dispatch leaves the record untouched.
            # The attempt itself waits for this lock, so it always sees the mark.
            await self.dispatcher.forward(ForwardMessage.for_record(record, record.target_url))

            mark_retrying(record)
            await self.store.set(record)
            await notify_status(self.notifier, record)

        log.info("webhook_retry_initiated", retry_count=record.retry_count, target_url=record.target_url)
        track_replay("manual_retry")
        return record

    async def get_webhook(self, webhook_id: str) -> WebhookRecord:
        """
        Get a webhook by id.

        Raises:
            WebhookNotFoundError: No record for webhook_id
        """
        record = await self.store.get(webhook_id)
        if record is None:
            get_logger(webhook_id=webhook_id).warning("webhook_not_found")
            raise WebhookNotFoundError(webhook_id)
        return record

    async def list_webhooks(
        self,
        project_id: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[WebhookRecord], int]:
        """
        List webhooks newest first.

        Returns:
            The requested page and the total number of matching records
        """
        records = await self.store.list_all()
        if project_id:
            records = [r for r in records if r.project_id == project_id]

        records.sort(key=lambda r: r.received_at, reverse=True)
        return records[offset:offset + limit], len(records)

    async def list_failed(self) -> list[WebhookRecord]:
        """Webhooks that are retrying, dead-lettered, or in the legacy failed status."""
        records = [r for r in await self.store.list_all() if r.status in FAILED_STATUSES]
        records.sort(key=lambda r: r.received_at, reverse=True)
        return records
