"""
Webhook record model.

A WebhookRecord is the unit of truth: the captured request plus the
outcome of its most recent delivery.
"""
import enum
import threading
import time
import uuid
from datetime import datetime, timezone
from typing import Any, Optional, Union

from hookrelay.models.base import CamelModel

HeaderValue = Union[str, list[str]]

_id_lock = threading.Lock()
_last_id_millis = 0


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def generate_webhook_id() -> str:
    """
    Generate a webhook id of the form ``wh_<epoch-millis>_<uuid4>``.

    The millisecond component never goes backwards within a process, so ids
    sort roughly by capture time.
    """
    global _last_id_millis
    with _id_lock:
        millis = max(time.time_ns() // 1_000_000, _last_id_millis)
        _last_id_millis = millis
    return f"wh_{millis}_{uuid.uuid4()}"


class WebhookStatus(str, enum.Enum):
    """Webhook delivery status."""
    RECEIVED = "received"
    FORWARDED = "forwarded"
    RETRYING = "retrying"
    DLQ = "dlq"
    # Deprecated alias of DLQ, only found on records written before retries existed
    FAILED = "failed"


TERMINAL_STATUSES = frozenset({WebhookStatus.FORWARDED, WebhookStatus.DLQ})
FAILED_STATUSES = frozenset({WebhookStatus.FAILED, WebhookStatus.RETRYING, WebhookStatus.DLQ})


class WebhookRecord(CamelModel):
    """
    A captured webhook and its delivery state.

    id, project_id, method, headers, body and received_at are written once at
    capture. Every other field is a side effect of a delivery transition.
    """
    id: str
    project_id: str
    method: str
    headers: dict[str, HeaderValue] = {}
    body: Any = None
    received_at: datetime
    status: WebhookStatus = WebhookStatus.RECEIVED
    target_url: Optional[str] = None
    forwarded_at: Optional[datetime] = None
    error_message: Optional[str] = None
    retry_count: int = 0
    last_retry_at: Optional[datetime] = None
    dlq_at: Optional[datetime] = None

    def to_wire(self) -> dict:
        """Full record as returned by the API; unset delivery fields are omitted."""
        data = self.model_dump(mode="json", by_alias=True, exclude_none=True)
        data.setdefault("body", None)
        return data

    def __repr__(self):
        return f"<WebhookRecord(id={self.id}, status={self.status.value})>"


class StatusProjection(CamelModel):
    """Lightweight status view pushed to the notification feed."""
    id: str
    project_id: str
    method: str
    received_at: datetime
    status: WebhookStatus
    target_url: Optional[str] = None
    error_message: Optional[str] = None
    retry_count: int = 0

    @classmethod
    def from_record(cls, record: WebhookRecord) -> "StatusProjection":
        return cls(
            id=record.id,
            project_id=record.project_id,
            method=record.method,
            received_at=record.received_at,
            status=record.status,
            target_url=record.target_url,
            error_message=record.error_message,
            retry_count=record.retry_count,
        )


class FailedWebhookSummary(CamelModel):
    """Row of the failed-webhooks listing."""
    id: str
    project_id: str
    status: WebhookStatus
    received_at: datetime
    target_url: Optional[str] = None
    error_message: Optional[str] = None
    retry_count: int = 0
    last_retry_at: Optional[datetime] = None
    dlq_at: Optional[datetime] = None

    @classmethod
    def from_record(cls, record: WebhookRecord) -> "FailedWebhookSummary":
        return cls(
            id=record.id,
            project_id=record.project_id,
            status=record.status,
            received_at=record.received_at,
            target_url=record.target_url,
            error_message=record.error_message,
            retry_count=record.retry_count,
            last_retry_at=record.last_retry_at,
            dlq_at=record.dlq_at,
        )

    def to_wire(self) -> dict:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)
