"""
Webhook delivery state machine.

All status changes go through the helpers here. Each helper validates the
edge, then stamps the fields that belong to the transition.
"""
from datetime import datetime
from typing import Optional

from hookrelay.errors import InvalidTransitionError
from hookrelay.models.webhook import WebhookRecord, WebhookStatus, utcnow

_DELIVERY_TARGETS = frozenset({
    WebhookStatus.RETRYING,
    WebhookStatus.FORWARDED,
    WebhookStatus.DLQ,
})

# Nothing moves back to RECEIVED (only capture creates it) and nothing is
# moved to the deprecated FAILED status.
ALLOWED_TRANSITIONS: dict[WebhookStatus, frozenset[WebhookStatus]] = {
    WebhookStatus.RECEIVED: _DELIVERY_TARGETS,
    WebhookStatus.RETRYING: _DELIVERY_TARGETS,
    WebhookStatus.FORWARDED: _DELIVERY_TARGETS,
    WebhookStatus.DLQ: _DELIVERY_TARGETS,
    WebhookStatus.FAILED: _DELIVERY_TARGETS,
}


def can_transition(current: WebhookStatus, target: WebhookStatus) -> bool:
    return target in ALLOWED_TRANSITIONS.get(current, frozenset())


def _move(record: WebhookRecord, target: WebhookStatus) -> None:
    if not can_transition(record.status, target):
        raise InvalidTransitionError(record.status.value, target.value)
    record.status = target


def mark_forwarded(record: WebhookRecord, target_url: str, now: Optional[datetime] = None) -> None:
    """Terminal success. retry_count is left alone; a stale error is cleared."""
    now = now or utcnow()
    _move(record, WebhookStatus.FORWARDED)
    record.forwarded_at = now
    record.target_url = target_url
    record.error_message = None


def mark_retrying(
    record: WebhookRecord,
    error_message: Optional[str] = None,
    target_url: Optional[str] = None,
    now: Optional[datetime] = None,
) -> None:
    """Transient failure or manual retry: bump the counter and stamp the retry time."""
    now = now or utcnow()
    _move(record, WebhookStatus.RETRYING)
    record.retry_count += 1
    record.last_retry_at = now
    if error_message is not None:
        record.error_message = error_message
    if target_url is not None:
        record.target_url = target_url


def mark_dead_lettered(
    record: WebhookRecord,
    error_message: str,
    target_url: str,
    now: Optional[datetime] = None,
) -> None:
    """Terminal permanent failure."""
    now = now or utcnow()
    _move(record, WebhookStatus.DLQ)
    record.error_message = error_message
    record.dlq_at = now
    record.forwarded_at = now
    record.target_url = target_url
