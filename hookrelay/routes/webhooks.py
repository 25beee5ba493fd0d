"""
Webhook API routes.

Inspect captured webhooks and re-trigger their delivery.
"""
from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field, field_validator

from hookrelay.dependencies.relay import get_relay_service
from hookrelay.errors import InvalidInputError
from hookrelay.models.webhook import FailedWebhookSummary
from hookrelay.services.relay_service import RelayService, validate_target_url


router = APIRouter(prefix="/webhooks", tags=["webhooks"])

DEFAULT_LIMIT = 50


class ReplayRequest(BaseModel):
    """Request model for replaying a webhook."""
    target_url: str = Field(alias="targetUrl")

    @field_validator("target_url")
    @classmethod
    def check_target_url(cls, value: str) -> str:
        # Validated but not normalised, so the stored URL is exactly what was sent
        try:
            return validate_target_url(value)
        except InvalidInputError as e:
            raise ValueError(e.message) from None


def _parse_int(value: Optional[str], default: int, minimum: int) -> int:
    """Lenient query int: anything unparsable or below ``minimum`` falls back to ``default``."""
    try:
        parsed = int(value)
    except (TypeError, ValueError):
        return default
    return parsed if parsed >= minimum else default


@router.get("", response_model=dict)
async def list_webhooks(
    projectId: Optional[str] = None,
    limit: Optional[str] = None,
    offset: Optional[str] = None,
    relay: RelayService = Depends(get_relay_service)
):
    """
    List webhooks, newest first.

    Optional projectId filter, limit (default 50) and offset (default 0).
    """
    page_limit = _parse_int(limit, DEFAULT_LIMIT, minimum=1)
    page_offset = _parse_int(offset, 0, minimum=0)

    webhooks, total = await relay.list_webhooks(
        project_id=projectId,
        limit=page_limit,
        offset=page_offset,
    )

    return {
        "webhooks": [webhook.to_wire() for webhook in webhooks],
        "total": total,
        "limit": page_limit,
        "offset": page_offset,
    }


@router.get("/failed", response_model=dict)
async def list_failed_webhooks(
    relay: RelayService = Depends(get_relay_service)
):
    """List retrying, dead-lettered and legacy failed webhooks."""
    webhooks = await relay.list_failed()

    return {
        "webhooks": [FailedWebhookSummary.from_record(webhook).to_wire() for webhook in webhooks],
        "total": len(webhooks),
    }


@router.get("/{webhook_id}", response_model=dict)
async def get_webhook(
    webhook_id: str,
    relay: RelayService = Depends(get_relay_service)
):
    """Get a single webhook with its delivery state."""
    webhook = await relay.get_webhook(webhook_id)
    return webhook.to_wire()


@router.post("/{webhook_id}/replay", response_model=dict)
async def replay_webhook(
    webhook_id: str,
    request: ReplayRequest,
    relay: RelayService = Depends(get_relay_service)
):
    """
    Replay a webhook to a target URL.

    Delivery is asynchronous; poll GET /webhooks/{id} for the outcome.
    """
    await relay.replay(webhook_id, request.target_url)

    return {
        "webhookId": webhook_id,
        "status": "accepted"
    }


@router.post("/{webhook_id}/retry", response_model=dict)
async def retry_webhook(
    webhook_id: str,
    relay: RelayService = Depends(get_relay_service)
):
    """Retry delivery to the webhook's last target URL."""
    await relay.manual_retry(webhook_id)

    return {
        "message": "Webhook retry initiated",
        "webhookId": webhook_id
    }
