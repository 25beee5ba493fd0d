"""
Delivery Engine

Executes a single outbound delivery attempt, classifies the outcome and
applies the resulting state transition:

    2xx/3xx             -> forwarded
    4xx                 -> dlq (dead-letter message emitted)
    5xx / network error -> retrying, TransientDeliveryError raised so the
                           scheduler runs another attempt; on the final
                           attempt it is dead-lettered instead
"""
import asyncio
import enum
import json
import time
from typing import Any, Optional

import httpx

from hookrelay.errors import (
    DeliveryError,
    PermanentDeliveryError,
    RecordMissingError,
    TransientDeliveryError,
)
from hookrelay.logging_config import get_logger
from hookrelay.models.messages import DeadLetterMessage, ForwardMessage
from hookrelay.models.webhook import HeaderValue, TERMINAL_STATUSES
from hookrelay.routes.metrics import track_delivery
from hookrelay.sentry_config import capture_exception
from hookrelay.services.dispatcher import Dispatcher
from hookrelay.services.locks import WebhookLocks
from hookrelay.services.notifier import StatusNotifier, notify_status
from hookrelay.services.state_machine import mark_dead_lettered, mark_forwarded, mark_retrying
from hookrelay.services.webhook_store import WebhookStore

DEFAULT_TIMEOUT_SECONDS = 10.0


class DeliveryOutcome(str, enum.Enum):
    """What a single attempt did to the record."""
    FORWARDED = "forwarded"
    RETRYING = "retrying"
    DLQ = "dlq"
    SKIPPED = "skipped"


def build_forward_headers(headers: dict[str, HeaderValue]) -> dict[str, str]:
    """
    Reduce captured headers to at most a Content-Type entry.

    Host, content-length and provider signature headers from the original
    caller are wrong for a different destination, so everything else is dropped.
    """
    for name, value in headers.items():
        if name.lower() != "content-type":
            continue
        if isinstance(value, list):
            if not value:
                return {}
            value = value[0]
        return {"Content-Type": value}
    return {}


def classify_response(response: httpx.Response) -> Optional[DeliveryError]:
    """None for a successful (< 400) response, otherwise the matching failure."""
    if response.status_code < 400:
        return None
    message = f"HTTP {response.status_code}: {response.reason_phrase}"
    if response.status_code < 500:
        return PermanentDeliveryError(message, response.status_code)
    return TransientDeliveryError(message, response.status_code)


class DeliveryEngine:
    """Runs delivery attempts against target URLs."""

    def __init__(
        self,
        store: WebhookStore,
        notifier: StatusNotifier,
        dispatcher: Dispatcher,
        locks: WebhookLocks,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.store = store
        self.notifier = notifier
        self.dispatcher = dispatcher
        self.locks = locks
        self.timeout = timeout
        self.transport = transport

    async def attempt(
        self,
        message: ForwardMessage,
        final_attempt: bool = False,
        scheduled_retry: bool = False,
    ) -> DeliveryOutcome:
        """
        Run one delivery attempt for ``message``.

        Args:
            message: The webhook-forward message
            final_attempt: The scheduler will not call again for this cycle;
                a transient failure is dead-lettered instead of retried
            scheduled_retry: This is a rescheduled attempt rather than the
                first one of a cycle; it is skipped if the record already
                reached a terminal status

        Returns:
            The outcome applied to the record

        Raises:
            RecordMissingError: The record no longer exists; nothing was changed
            TransientDeliveryError: The record is now retrying and the
                scheduler should run another attempt
        """
        log = get_logger(webhook_id=message.webhook_id, target_url=message.target_url)

        async with self.locks.hold(message.webhook_id):
            record = await self.store.get(message.webhook_id)
            if record is None:
                log.error("webhook_missing_during_delivery")
                raise RecordMissingError(message.webhook_id)

            if scheduled_retry and record.status in TERMINAL_STATUSES:
                log.info("stale_retry_skipped", status=record.status.value)
                return DeliveryOutcome.SKIPPED

            log.info("forwarding_webhook", final_attempt=final_attempt, scheduled_retry=scheduled_retry)

            started = time.monotonic()
            failure = await self._post(message.target_url, message.headers, message.body)
            duration = time.monotonic() - started

            if failure is None:
                mark_forwarded(record, message.target_url)
                outcome = DeliveryOutcome.FORWARDED
            elif isinstance(failure, TransientDeliveryError) and not final_attempt:
                mark_retrying(record, failure.message, message.target_url)
                outcome = DeliveryOutcome.RETRYING
            else:
                mark_dead_lettered(record, failure.message, message.target_url)
                outcome = DeliveryOutcome.DLQ

            await self.store.set(record)
            track_delivery(outcome.value, duration)
            await notify_status(self.notifier, record)

        if outcome is DeliveryOutcome.FORWARDED:
            log.info("webhook_forwarded", duration_ms=round(duration * 1000, 2))
        elif outcome is DeliveryOutcome.RETRYING:
            log.warning("webhook_forward_retrying", retry_count=record.retry_count, error=failure.message)
            raise failure
        else:
            log.error(
                "webhook_forward_dead_lettered",
                error=failure.message,
                status_code=failure.response_status,
                retries_exhausted=isinstance(failure, TransientDeliveryError),
            )
            await self._dead_letter(DeadLetterMessage(
                webhook_id=record.id,
                target_url=message.target_url,
                error_message=failure.message,
                status_code=failure.response_status or 0,
            ))

        return outcome

    async def _post(self, target_url: str, headers: dict[str, HeaderValue], body: Any) -> Optional[DeliveryError]:
        """
        Issue the single outbound POST. Returns the failure, if any.

        The whole call, body read included, is capped at ``self.timeout``;
        httpx's own timeouts only bound each network phase.
        """
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                response = await asyncio.wait_for(
                    client.post(
                        target_url,
                        content=json.dumps(body),
                        headers=build_forward_headers(headers),
                    ),
                    timeout=self.timeout,
                )
        except asyncio.TimeoutError:
            return TransientDeliveryError(f"Request timed out after {self.timeout:g}s")
        except httpx.InvalidURL as e:
            return PermanentDeliveryError(str(e))
        except httpx.HTTPError as e:
            # Timeouts and connection failures are retry-worthy
            return TransientDeliveryError(str(e) or e.__class__.__name__)
        return classify_response(response)

    async def _dead_letter(self, message: DeadLetterMessage) -> None:
        try:
            await self.dispatcher.dead_letter(message)
        except Exception as e:
            get_logger(webhook_id=message.webhook_id).warning("dead_letter_dispatch_failed", error=str(e))
            capture_exception(e)
