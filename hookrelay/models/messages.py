"""
Queue messages exchanged between the API, the worker and the delivery engine.

Each message is enqueued as its camelCase JSON dict.
"""
from datetime import datetime
from typing import Any

from hookrelay.models.base import CamelModel
from hookrelay.models.webhook import HeaderValue, WebhookRecord

# Topic names double as the ARQ task that consumes them
CAPTURED_TOPIC = "webhook-captured"
FORWARD_TOPIC = "webhook-forward"
DEAD_LETTER_TOPIC = "webhook-forward-dlq"


class CapturedMessage(CamelModel):
    """webhook-captured: raw request data, persisted by the process step."""
    webhook_id: str
    project_id: str
    method: str
    headers: dict[str, HeaderValue] = {}
    body: Any = None
    received_at: datetime

    def to_record(self) -> WebhookRecord:
        return WebhookRecord(
            id=self.webhook_id,
            project_id=self.project_id,
            method=self.method,
            headers=self.headers,
            body=self.body,
            received_at=self.received_at,
        )


class ForwardMessage(CamelModel):
    """webhook-forward: triggers exactly one delivery attempt."""
    webhook_id: str
    target_url: str
    headers: dict[str, HeaderValue] = {}
    body: Any = None

    @classmethod
    def for_record(cls, record: WebhookRecord, target_url: str) -> "ForwardMessage":
        return cls(
            webhook_id=record.id,
            target_url=target_url,
            headers=record.headers,
            body=record.body,
        )


class DeadLetterMessage(CamelModel):
    """webhook-forward-dlq: a delivery that will not be retried automatically."""
    webhook_id: str
    target_url: str
    error_message: str
    # HTTP status of the last response, 0 for network/timeout errors
    status_code: int = 0
