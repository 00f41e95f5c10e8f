"""Audit trail: builds entries, queues them for the audit worker, and queries them.

Every ``log_*`` call is fire-and-forget. The entry is written by
``tasks.process_audit_log``; a broker outage is reported to Sentry and never
fails the operation being audited.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any

import sentry_sdk
import structlog
from sqlalchemy import delete, select
from sqlalchemy.orm import Session

from bridge.models.audit import AuditLog
from bridge.models.base import utcnow
from bridge.models.enums import AuditAction, AuditModel

logger = structlog.get_logger()

AUDIT_QUEUE = "audit-logs"
AUDIT_QUEUE_HIGH = "audit-logs-high"

# Successful calls under these prefixes are audited; errors are audited everywhere
SENSITIVE_ENDPOINTS = (
    "/v1/lgpd/",
    "/v1/export/",
    "/v1/ai/insights/",
    "/v1/webhooks/",
    "/v1/dead-letters/",
)


def build_audit_data(
    *,
    user_id: str | int | None,
    action: str,
    model: str,
    model_id: str | int | None = None,
    changes: dict[str, Any] | None = None,
    ip_address: str | None = None,
    user_agent: str | None = None,
) -> dict[str, Any]:
    return {
        "user_id": None if user_id is None else str(user_id),
        "action": action,
        "model": model,
        "model_id": None if model_id is None else str(model_id),
        "changes": changes or {},
        "ip_address": ip_address,
        "user_agent": user_agent,
        "created_at": utcnow().isoformat(),
    }


def enqueue_audit_log(audit_data: dict[str, Any], *, high_priority: bool = False) -> None:
    """Queue one entry for ``tasks.process_audit_log``."""
    from bridge.modules.audit.tasks import process_audit_log

    queue = AUDIT_QUEUE_HIGH if high_priority else AUDIT_QUEUE
    try:
        process_audit_log.apply_async(args=[audit_data], queue=queue, countdown=1)
    except Exception as exc:
        logger.error(
            "audit_log_enqueue_failed",
            action=audit_data.get("action"),
            model=audit_data.get("model"),
            queue=queue,
            error=str(exc),
        )
        sentry_sdk.capture_exception(exc)


class AuditService:
    def __init__(
        self,
        session: Session | None = None,
        *,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> None:
        self.session = session
        self.ip_address = ip_address
        self.user_agent = user_agent

    def _queue(
        self,
        *,
        user_id: str | int | None,
        action: str,
        model: str,
        model_id: str | int | None = None,
        changes: dict[str, Any] | None = None,
        high_priority: bool = False,
    ) -> dict[str, Any]:
        audit_data = build_audit_data(
            user_id=user_id,
            action=action,
            model=model,
            model_id=model_id,
            changes=changes,
            ip_address=self.ip_address,
            user_agent=self.user_agent,
        )
        enqueue_audit_log(audit_data, high_priority=high_priority)
        return audit_data

    # ── Emitters ─────────────────────────────────────────────────────────────

    def log_authentication(self, user_id: str | int, action: str) -> dict[str, Any]:
        return self._queue(
            user_id=user_id,
            action=action,
            model=AuditModel.USER.value,
            model_id=user_id,
            changes={
                "ip_address": self.ip_address,
                "user_agent": self.user_agent,
                "action": action,
                "timestamp": utcnow().isoformat(),
            },
        )

    def log_data_access(
        self,
        user_id: str | int | None,
        model: str,
        model_id: str | int | None,
        action: str,
        changes: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        return self._queue(
            user_id=user_id, action=action, model=model, model_id=model_id, changes=changes
        )

    def log_data_modification(
        self,
        user_id: str | int | None,
        model: str,
        model_id: str | int,
        action: str,
        old_data: dict[str, Any] | None = None,
        new_data: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        old_data = old_data or {}
        new_data = new_data or {}
        modified = [key for key, value in new_data.items() if old_data.get(key) != value]
        return self.log_data_access(
            user_id,
            model,
            model_id,
            action,
            {"old_data": old_data, "new_data": new_data, "modified_fields": modified},
        )

    def log_data_deletion(
        self,
        user_id: str | int | None,
        model: str,
        model_id: str | int,
        deleted_data: dict[str, Any] | None = None,
        reason: str = "User requested deletion",
    ) -> dict[str, Any]:
        return self.log_data_access(
            user_id,
            model,
            model_id,
            AuditAction.DELETE.value,
            {"deleted_data": deleted_data or {}, "deletion_reason": reason},
        )

    def log_lgpd_event(
        self,
        user_id: str | int | None,
        event: str,
        contact_id: int,
        details: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        return self._queue(
            user_id=user_id,
            action=event,
            model=AuditModel.CONTACT.value,
            model_id=contact_id,
            changes={**(details or {}), "lgpd_event": True, "timestamp": utcnow().isoformat()},
        )

    def log_api_access(
        self,
        user_id: str | int | None,
        endpoint: str,
        method: str,
        status_code: int,
        response_time_ms: float,
    ) -> dict[str, Any] | None:
        """Only sensitive endpoints and error responses are recorded."""
        if not should_log_api_access(endpoint, status_code):
            return None
        return self._queue(
            user_id=user_id,
            action="api_access",
            model=AuditModel.API.value,
            changes={
                "endpoint": endpoint,
                "method": method,
                "status_code": status_code,
                "response_time_ms": response_time_ms,
                "timestamp": utcnow().isoformat(),
            },
        )

    def log_security_event(self, event: str, details: dict[str, Any] | None = None) -> dict[str, Any]:
        return self._queue(
            user_id=None,
            action=event,
            model=AuditModel.SECURITY.value,
            changes={**(details or {}), "security_event": True, "timestamp": utcnow().isoformat()},
            high_priority=True,
        )

    # ── Persistence (requires a session) ─────────────────────────────────────

    def _db(self) -> Session:
        if self.session is None:
            raise RuntimeError("AuditService was created without a database session")
        return self.session

    def write(self, audit_data: dict[str, Any]) -> AuditLog:
        created_at = audit_data.get("created_at")
        entry = AuditLog(
            user_id=audit_data.get("user_id"),
            action=audit_data["action"],
            model=audit_data["model"],
            model_id=audit_data.get("model_id"),
            changes=audit_data.get("changes"),
            ip_address=audit_data.get("ip_address"),
            user_agent=audit_data.get("user_agent"),
        )
        if created_at:
            entry.created_at = datetime.fromisoformat(created_at)
        session = self._db()
        session.add(entry)
        session.flush()
        return entry

    def get_user_audit_logs(self, user_id: str | int, limit: int = 100) -> list[dict[str, Any]]:
        stmt = (
            select(AuditLog)
            .where(AuditLog.user_id == str(user_id))
            .order_by(AuditLog.created_at.desc(), AuditLog.id.desc())
            .limit(limit)
        )
        return [row.to_dict() for row in self._db().scalars(stmt)]

    def get_model_audit_logs(
        self, model: str, model_id: str | int, limit: int = 100
    ) -> list[dict[str, Any]]:
        stmt = (
            select(AuditLog)
            .where(AuditLog.model == model, AuditLog.model_id == str(model_id))
            .order_by(AuditLog.created_at.desc(), AuditLog.id.desc())
            .limit(limit)
        )
        return [row.to_dict() for row in self._db().scalars(stmt)]

    def cleanup_old_logs(self, retention_days: int = 365) -> int:
        cutoff = utcnow() - timedelta(days=retention_days)
        result = self._db().execute(delete(AuditLog).where(AuditLog.created_at < cutoff))
        deleted = result.rowcount or 0
        logger.info(
            "audit_logs_cleanup_completed",
            deleted_count=deleted,
            retention_days=retention_days,
            cutoff_date=cutoff.isoformat(),
        )
        return deleted


def should_log_api_access(endpoint: str, status_code: int) -> bool:
    if status_code >= 400:
        return True
    return any(prefix in endpoint for prefix in SENSITIVE_ENDPOINTS)
