"""Operator API for inspecting and replaying dead-lettered work."""

from __future__ import annotations

import structlog
from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.orm import Session

from bridge.core.database import get_db
from bridge.core.security import verify_token
from bridge.modules.dead_letters.schemas import (
    FailedAuditLogResponse,
    FailedDataDeletionResponse,
    FailedDataExportResponse,
    RetryWebhookResponse,
)
from bridge.modules.dead_letters.service import DeadLetterService
from bridge.modules.webhooks.router import client_ip
from bridge.modules.webhooks.schemas import FailedWebhookResponse, WebhookStatsResponse
from bridge.modules.webhooks.service import WebhookService

logger = structlog.get_logger()

router = APIRouter(prefix="/dead-letters", tags=["Dead Letters"])


# ── Webhooks ──────────────────────────────────────────────────────────────────


@router.get("/webhooks", response_model=list[FailedWebhookResponse])
def list_failed_webhooks(
    event_type: str | None = Query(None),
    limit: int = Query(100, ge=1, le=500),
    offset: int = Query(0, ge=0),
    current_user: dict = Depends(verify_token),
    db: Session = Depends(get_db),
) -> list[FailedWebhookResponse]:
    rows = WebhookService(db).list_failed(event_type=event_type, limit=limit, offset=offset)
    return [FailedWebhookResponse.model_validate(r) for r in rows]


@router.get("/webhooks/stats", response_model=WebhookStatsResponse)
def failed_webhook_stats(
    days: int = Query(7, ge=1, le=365),
    current_user: dict = Depends(verify_token),
    db: Session = Depends(get_db),
) -> WebhookStatsResponse:
    """Dead-lettered webhook counts by event type over the last ``days`` days."""
    return WebhookStatsResponse.model_validate(WebhookService(db).get_statistics(days))


@router.get("/webhooks/{webhook_id}", response_model=FailedWebhookResponse)
def get_failed_webhook(
    webhook_id: str,
    current_user: dict = Depends(verify_token),
    db: Session = Depends(get_db),
) -> FailedWebhookResponse:
    return FailedWebhookResponse.model_validate(WebhookService(db).get_failed(webhook_id))


@router.post("/webhooks/{webhook_id}/retry", response_model=RetryWebhookResponse)
def retry_failed_webhook(
    webhook_id: str,
    request: Request,
    current_user: dict = Depends(verify_token),
    db: Session = Depends(get_db),
) -> RetryWebhookResponse:
    """Re-enqueue the stored payload; the dead-letter row is removed once queued."""
    result = WebhookService(db).retry_failed_webhook(
        webhook_id,
        ip_address=client_ip(request),
        user_agent=request.headers.get("user-agent"),
    )
    logger.info("dead_letter_retry_requested", webhook_id=webhook_id, user_id=current_user["user_id"])
    return RetryWebhookResponse.model_validate(result)


# ── LGPD and audit jobs ───────────────────────────────────────────────────────


@router.get("/deletions", response_model=list[FailedDataDeletionResponse])
def list_failed_deletions(
    limit: int = Query(100, ge=1, le=500),
    offset: int = Query(0, ge=0),
    current_user: dict = Depends(verify_token),
    db: Session = Depends(get_db),
) -> list[FailedDataDeletionResponse]:
    rows = DeadLetterService(db).list_failed_deletions(limit, offset)
    return [FailedDataDeletionResponse.model_validate(r) for r in rows]


@router.get("/exports", response_model=list[FailedDataExportResponse])
def list_failed_exports(
    limit: int = Query(100, ge=1, le=500),
    offset: int = Query(0, ge=0),
    current_user: dict = Depends(verify_token),
    db: Session = Depends(get_db),
) -> list[FailedDataExportResponse]:
    rows = DeadLetterService(db).list_failed_exports(limit, offset)
    return [FailedDataExportResponse.model_validate(r) for r in rows]


@router.get("/audit-logs", response_model=list[FailedAuditLogResponse])
def list_failed_audit_logs(
    limit: int = Query(100, ge=1, le=500),
    offset: int = Query(0, ge=0),
    current_user: dict = Depends(verify_token),
    db: Session = Depends(get_db),
) -> list[FailedAuditLogResponse]:
    rows = DeadLetterService(db).list_failed_audit_logs(limit, offset)
    return [FailedAuditLogResponse.model_validate(r) for r in rows]
