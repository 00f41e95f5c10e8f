"""Chatwoot webhook intake API.

Signatures are checked by ``WebhookSignatureMiddleware`` before these routes
run; the routes only validate the payload shape, claim the dedup marker and
enqueue the handler job.
"""

from __future__ import annotations

from typing import Any

import structlog
from fastapi import APIRouter, Body, Depends, Request, status
from sqlalchemy.orm import Session

from bridge.core.database import get_db
from bridge.models.base import utcnow
from bridge.models.enums import WebhookEvent
from bridge.modules.webhooks.schemas import (
    ConversationCreatedPayload,
    ConversationStatusChangedPayload,
    MessageCreatedPayload,
    WebhookAcceptedResponse,
    WebhookStatusResponse,
)
from bridge.modules.webhooks.service import WebhookService

logger = structlog.get_logger()

router = APIRouter(prefix="/webhooks/chatwoot", tags=["Chatwoot Webhooks"])


def client_ip(request: Request) -> str | None:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else None


def _accept(
    request: Request, db: Session, event: WebhookEvent, payload: dict[str, Any]
) -> WebhookAcceptedResponse:
    result = WebhookService(db).accept(
        event,
        payload,
        ip_address=client_ip(request),
        user_agent=request.headers.get("user-agent", "")[:500] or None,
    )
    return WebhookAcceptedResponse.model_validate(result)


# ── Intake ────────────────────────────────────────────────────────────────────


@router.post(
    "/conversation-created",
    response_model=WebhookAcceptedResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
def conversation_created(
    body: ConversationCreatedPayload,
    request: Request,
    db: Session = Depends(get_db),
) -> WebhookAcceptedResponse:
    """Queue lead creation for a new conversation."""
    return _accept(request, db, WebhookEvent.CONVERSATION_CREATED, body.model_dump(mode="json"))


@router.post(
    "/message-created",
    response_model=WebhookAcceptedResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
def message_created(
    body: MessageCreatedPayload,
    request: Request,
    db: Session = Depends(get_db),
) -> WebhookAcceptedResponse:
    """Queue activity creation for a new message."""
    return _accept(request, db, WebhookEvent.MESSAGE_CREATED, body.model_dump(mode="json"))


@router.post(
    "/conversation-status-changed",
    response_model=WebhookAcceptedResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
def conversation_status_changed(
    body: ConversationStatusChangedPayload,
    request: Request,
    db: Session = Depends(get_db),
) -> WebhookAcceptedResponse:
    """Queue a pipeline stage update for a status change."""
    return _accept(
        request, db, WebhookEvent.CONVERSATION_STATUS_CHANGED, body.model_dump(mode="json")
    )


# ── Diagnostics ───────────────────────────────────────────────────────────────


@router.post("/test")
def test_webhook(request: Request, payload: dict[str, Any] = Body(...)) -> dict:
    """Echo a signed payload so Chatwoot's configuration can be checked end to end."""
    logger.info("webhook_test_received", ip=client_ip(request), keys=sorted(payload))
    return {
        "success": True,
        "message": "Webhook signature verified",
        "received_at": utcnow().isoformat(),
        "payload": payload,
    }


@router.get("/status/{webhook_id}", response_model=WebhookStatusResponse)
def webhook_status(webhook_id: str, db: Session = Depends(get_db)) -> WebhookStatusResponse:
    """Processed, failed (dead-lettered) or still pending."""
    return WebhookStatusResponse.model_validate(WebhookService(db).get_status(webhook_id))
