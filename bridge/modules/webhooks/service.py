"""Webhook intake, dead-letter storage and operator replay."""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any

import structlog
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from bridge.core.config import settings
from bridge.core.errors import BridgeError, DomainValidationError
from bridge.core.jobs import WEBHOOK_POLICY_HIGH, WEBHOOK_POLICY_NORMAL, JobPolicy
from bridge.core.shared_state import SharedState, get_shared_state
from bridge.models.base import utcnow
from bridge.models.dead_letter import FailedWebhook
from bridge.models.enums import WebhookEvent
from bridge.modules.audit.service import AuditService

logger = structlog.get_logger()

# Small delay so bursts for one conversation reach the worker together
DISPATCH_COUNTDOWN = 2

WEBHOOK_JOBS: dict[WebhookEvent, tuple[str, JobPolicy]] = {
    WebhookEvent.CONVERSATION_CREATED: ("tasks.process_conversation_created", WEBHOOK_POLICY_HIGH),
    WebhookEvent.MESSAGE_CREATED: ("tasks.process_message_created", WEBHOOK_POLICY_NORMAL),
    WebhookEvent.CONVERSATION_STATUS_CHANGED: (
        "tasks.process_conversation_status_changed",
        WEBHOOK_POLICY_HIGH,
    ),
}


class WebhookNotFoundError(BridgeError):
    error_code = "FAILED_WEBHOOK_NOT_FOUND"
    status_code = 404


class WebhookProcessingError(BridgeError):
    error_code = "WEBHOOK_PROCESSING_ERROR"
    status_code = 500


def webhook_id_for(event: WebhookEvent, payload: dict[str, Any]) -> str:
    """Delivery identity used for dedup markers, dead letters and Krayin idempotency.

    Status changes repeat for one conversation, so their id also carries the
    new status and the change timestamp.
    """
    base = f"{event.value}:{payload.get('id')}"
    if event is WebhookEvent.CONVERSATION_STATUS_CHANGED:
        return f"{base}:{payload.get('status')}:{payload.get('changed_at') or ''}"
    return base


def processed_marker_key(webhook_id: str) -> str:
    return f"webhook_processed:{webhook_id}"


def completed_marker_key(webhook_id: str) -> str:
    return f"webhook_completed:{webhook_id}"


def mark_webhook_completed(webhook_id: str, state: SharedState | None = None) -> None:
    """Record that the job for ``webhook_id`` finished; intake only marks it queued."""
    (state or get_shared_state()).set(
        completed_marker_key(webhook_id),
        utcnow().isoformat(),
        ttl=settings.WEBHOOK_PROCESSED_TTL,
    )


def dispatch_webhook(
    event: WebhookEvent,
    webhook_id: str,
    payload: dict[str, Any],
    ip_address: str | None,
    user_agent: str | None,
) -> None:
    """Enqueue the handler job for one event on its queue."""
    from bridge.worker import celery_app

    task_name, policy = WEBHOOK_JOBS[event]
    celery_app.send_task(
        task_name,
        args=[webhook_id, payload, ip_address, user_agent],
        queue=policy.queue,
        countdown=DISPATCH_COUNTDOWN,
    )
    logger.info("webhook_dispatched", webhook_id=webhook_id, event=event.value, queue=policy.queue)


def record_failed_webhook(
    session: Session,
    *,
    webhook_id: str,
    event_type: str,
    payload: dict[str, Any],
    error: str,
    attempts: int,
    ip_address: str | None = None,
    user_agent: str | None = None,
) -> FailedWebhook:
    """Insert or refresh the dead-letter row for ``webhook_id``."""
    row = session.scalar(select(FailedWebhook).where(FailedWebhook.webhook_id == webhook_id))
    if row is None:
        row = FailedWebhook(
            webhook_id=webhook_id,
            event_type=event_type,
            payload=payload,
            error=error,
            attempts=attempts,
            ip_address=ip_address,
            user_agent=user_agent,
        )
        session.add(row)
    else:
        row.payload = payload
        row.error = error
        row.attempts = attempts
        row.failed_at = utcnow()
    session.flush()
    logger.warning(
        "webhook_dead_lettered",
        webhook_id=webhook_id,
        event_type=event_type,
        attempts=attempts,
        error=error,
    )
    return row


class WebhookService:
    def __init__(
        self,
        session: Session,
        *,
        state: SharedState | None = None,
        audit: AuditService | None = None,
    ) -> None:
        self.session = session
        self.state = state or get_shared_state()
        self.audit = audit or AuditService()

    # ── Intake ───────────────────────────────────────────────────────────────

    def accept(
        self,
        event: WebhookEvent,
        payload: dict[str, Any],
        *,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> dict[str, Any]:
        """Claim the delivery's dedup marker and enqueue its job."""
        webhook_id = webhook_id_for(event, payload)
        queued_at = utcnow()
        marker = processed_marker_key(webhook_id)
        if not self.state.add(marker, queued_at.isoformat(), ttl=settings.WEBHOOK_PROCESSED_TTL):
            logger.info("webhook_duplicate_ignored", webhook_id=webhook_id, ip=ip_address)
            return {
                "success": True,
                "webhook_id": webhook_id,
                "queued_at": self.state.get(marker) or queued_at.isoformat(),
                "processing_status": "already_processed",
            }

        try:
            dispatch_webhook(event, webhook_id, payload, ip_address, user_agent)
        except Exception as exc:
            # Release the claim so Chatwoot's redelivery is not mistaken for a duplicate
            self.state.delete(marker)
            logger.error("webhook_dispatch_failed", webhook_id=webhook_id, error=str(exc))
            raise WebhookProcessingError(
                "Webhook processing failed", details={"webhook_id": webhook_id}
            ) from exc

        self.audit.log_security_event(
            "webhook_received",
            {
                "webhook_type": event.value,
                "webhook_id": webhook_id,
                "ip": ip_address,
                "user_agent": user_agent,
            },
        )
        return {
            "success": True,
            "webhook_id": webhook_id,
            "queued_at": queued_at.isoformat(),
            "processing_status": "queued",
        }

    # ── Status / dead letters ────────────────────────────────────────────────

    def get_status(self, webhook_id: str) -> dict[str, Any]:
        failed = self._failed(webhook_id)
        if failed is not None:
            return {
                "webhook_id": webhook_id,
                "status": "failed",
                "failed_at": failed.failed_at,
                "error": failed.error,
                "attempts": failed.attempts,
            }
        if self.state.get(completed_marker_key(webhook_id)) is not None:
            return {"webhook_id": webhook_id, "status": "processed"}
        if self.state.get(processed_marker_key(webhook_id)) is not None:
            return {"webhook_id": webhook_id, "status": "queued"}
        return {"webhook_id": webhook_id, "status": "pending"}

    def _failed(self, webhook_id: str) -> FailedWebhook | None:
        return self.session.scalar(
            select(FailedWebhook).where(FailedWebhook.webhook_id == webhook_id)
        )

    def list_failed(
        self, *, event_type: str | None = None, limit: int = 100, offset: int = 0
    ) -> list[FailedWebhook]:
        stmt = select(FailedWebhook).order_by(FailedWebhook.failed_at.desc(), FailedWebhook.id.desc())
        if event_type:
            stmt = stmt.where(FailedWebhook.event_type == event_type)
        return list(self.session.scalars(stmt.offset(offset).limit(limit)))

    def get_failed(self, webhook_id: str) -> FailedWebhook:
        row = self._failed(webhook_id)
        if row is None:
            raise WebhookNotFoundError(
                "Failed webhook not found", details={"webhook_id": webhook_id}
            )
        return row

    def retry_failed_webhook(
        self,
        webhook_id: str,
        *,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> dict[str, Any]:
        """Re-dispatch a dead letter; the row is removed once the job is enqueued."""
        row = self.get_failed(webhook_id)
        try:
            event = WebhookEvent.parse(row.event_type)
        except DomainValidationError as exc:
            raise DomainValidationError(
                "Unknown event type", details={"event_type": row.event_type}
            ) from exc

        dispatch_webhook(event, webhook_id, row.payload, ip_address, user_agent)  # type: ignore[arg-type]
        self.session.delete(row)
        self.session.commit()

        self.state.delete(completed_marker_key(webhook_id))
        self.state.set(
            processed_marker_key(webhook_id),
            utcnow().isoformat(),
            ttl=settings.WEBHOOK_PROCESSED_TTL,
        )
        logger.info("failed_webhook_retried", webhook_id=webhook_id, event_type=event.value)
        return {
            "success": True,
            "webhook_id": webhook_id,
            "event_type": event.value,
            "message": "Webhook queued for retry",
        }

    def get_statistics(self, days: int = 7) -> dict[str, Any]:
        since: datetime = utcnow() - timedelta(days=days)
        rows = self.session.execute(
            select(FailedWebhook.event_type, func.count())
            .where(FailedWebhook.failed_at >= since)
            .group_by(FailedWebhook.event_type)
        ).all()
        by_event = {event_type: count for event_type, count in rows}
        return {
            "period_days": days,
            "total_failed": sum(by_event.values()),
            "by_event_type": by_event,
            "since": since,
        }
