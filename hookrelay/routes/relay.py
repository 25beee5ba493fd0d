"""
Relay capture route.

Universal inbound endpoint: accepts any body for a project and returns
immediately with the new webhook id.
"""
import json
from typing import Any
from urllib.parse import parse_qsl

from fastapi import APIRouter, Depends, Request

from hookrelay.dependencies.relay import get_relay_service
from hookrelay.models.webhook import HeaderValue
from hookrelay.services.relay_service import RelayService


router = APIRouter(prefix="/relay", tags=["relay"])


def collect_headers(request: Request) -> dict[str, HeaderValue]:
    """Inbound headers; a header sent more than once becomes a list."""
    headers: dict[str, HeaderValue] = {}
    for name, value in request.headers.items():
        if name not in headers:
            headers[name] = value
        elif isinstance(headers[name], list):
            headers[name].append(value)
        else:
            headers[name] = [headers[name], value]
    return headers


async def read_body(request: Request) -> Any:
    """
    Decode the inbound body.

    JSON when it parses, url-encoded and multipart forms as a flat object
    (uploaded files by filename), anything else as text. An empty body is None.
    """
    raw = await request.body()
    if not raw:
        return None

    content_type = request.headers.get("content-type", "")
    if "application/x-www-form-urlencoded" in content_type:
        return dict(parse_qsl(raw.decode("utf-8", errors="replace"), keep_blank_values=True))
    if "multipart/form-data" in content_type:
        form = await request.form()
        return {
            name: value if isinstance(value, str) else value.filename
            for name, value in form.items()
        }

    try:
        return json.loads(raw)
    except ValueError:
        return raw.decode("utf-8", errors="replace")


@router.post("/{project_id}", response_model=dict)
async def capture_webhook(
    project_id: str,
    request: Request,
    relay: RelayService = Depends(get_relay_service)
):
    """
    Capture an inbound webhook.

    Always accepts. Storage and delivery happen in the background.
    """
    webhook_id = await relay.capture(
        project_id=project_id,
        method=request.method,
        headers=collect_headers(request),
        body=await read_body(request),
    )

    return {
        "webhookId": webhook_id,
        "status": "received"
    }
