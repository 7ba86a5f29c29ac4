from __future__ import annotations

import hmac
import logging
from typing import Any

from fastapi import APIRouter, Depends, Header, HTTPException, Request, status
from pydantic import BaseModel, Field

from stacksearch.apps.api.deps import get_container
from stacksearch.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from stacksearch.apps.api.response import SuccessEnvelope, success_response
from stacksearch.core.logging import mask_key
from stacksearch.services.container import ServiceContainer
from stacksearch.services.telemetry import increment_counter
from stacksearch.services.webhooks.queue import KNOWN_EVENTS, WebhookJobPayload, enqueue_webhook_event


logger = logging.getLogger(__name__)
router = APIRouter(prefix="/webhooks", tags=["webhooks"], responses=DEFAULT_ERROR_RESPONSES)


class WebhookBody(BaseModel):
    # Mirrors the CMS webhook body; unknown keys are tolerated since the CMS adds fields over time.
    event: str = Field(min_length=1)
    api_key: str | None = None
    module: str | None = None
    data: dict[str, Any] = Field(default_factory=dict)


class WebhookAccepted(BaseModel):
    event_id: str
    event: str
    status: str


def _bad_request(message: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_400_BAD_REQUEST,
        detail={"code": "WEBHOOK_INVALID", "message": message},
    )


def _event_name(body: WebhookBody) -> str:
    # Accept both "entry.publish" and the split {"module": "entry", "event": "publish"} form.
    event = body.event.strip().lower()
    if "." not in event and body.module:
        return f"{body.module.strip().lower()}.{event}"
    return event


def _nested_name(value: Any, key: str) -> str | None:
    if isinstance(value, dict):
        found = value.get(key)
        return str(found) if found else None
    if isinstance(value, str) and value:
        return value
    return None


def to_job_payload(body: WebhookBody) -> WebhookJobPayload:
    if not body.api_key:
        raise _bad_request("api_key is required")
    event = _event_name(body)
    data = body.data or {}
    entry = data.get("entry") if isinstance(data.get("entry"), dict) else None
    asset = data.get("asset") if isinstance(data.get("asset"), dict) else None
    content_type = _nested_name(data.get("content_type"), "uid")
    if event.startswith("entry."):
        if not entry or not entry.get("uid"):
            raise _bad_request("data.entry.uid is required")
        if not content_type:
            raise _bad_request("data.content_type.uid is required")
    elif event.startswith("asset."):
        if not asset or not asset.get("uid"):
            raise _bad_request("data.asset.uid is required")
    return WebhookJobPayload(
        event=event,
        stack_api_key=body.api_key,
        content_type=content_type,
        entry=entry,
        asset=asset,
        environment=_nested_name(data.get("environment"), "name"),
        locale=_nested_name(data.get("locale"), "code") or (entry or {}).get("locale"),
    )


def _check_secret(container: ServiceContainer, provided: str | None) -> None:
    expected = container.settings.webhook_shared_secret
    if not expected:
        return
    if provided is None or not hmac.compare_digest(provided, expected):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={"code": "WEBHOOK_UNAUTHORIZED", "message": "Invalid webhook secret"},
        )


@router.post(
    "/contentstack",
    status_code=status.HTTP_202_ACCEPTED,
    response_model=SuccessEnvelope[WebhookAccepted] | WebhookAccepted,
)
async def receive_webhook(
    request: Request,
    body: WebhookBody,
    x_webhook_secret: str | None = Header(default=None),
    container: ServiceContainer = Depends(get_container),
) -> dict:
    _check_secret(container, x_webhook_secret)
    payload = to_job_payload(body)
    increment_counter("webhook_received_total")
    if payload.event not in KNOWN_EVENTS:
        logger.info("webhook_ignored event=%s stack=%s", payload.event, mask_key(payload.stack_api_key))
        accepted = WebhookAccepted(event_id=payload.event_id, event=payload.event, status="ignored")
        return success_response(request=request, data=accepted)
    event_id = await enqueue_webhook_event(container, payload)
    logger.info("webhook_accepted event=%s stack=%s event_id=%s", payload.event, mask_key(payload.stack_api_key), event_id)
    accepted = WebhookAccepted(event_id=event_id, event=payload.event, status="accepted")
    return success_response(request=request, data=accepted)


# Legacy path used by existing stack webhook configurations.
router.add_api_route(
    "/entry-sync",
    receive_webhook,
    methods=["POST"],
    status_code=status.HTTP_202_ACCEPTED,
    include_in_schema=False,
)
