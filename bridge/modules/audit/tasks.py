"""Celery tasks for audit log persistence and retention."""

from __future__ import annotations

from typing import Any

import structlog
from celery import shared_task

from bridge.core.jobs import AUDIT_POLICY, run_with_policy

logger = structlog.get_logger()


@shared_task(name="tasks.process_audit_log", bind=True, max_retries=AUDIT_POLICY.max_retries)
def process_audit_log(self, audit_data: dict[str, Any]) -> dict:  # type: ignore[misc]
    """Write one queued audit entry; dead-letter into failed_audit_logs on exhaustion."""
    from bridge.core.database import get_db_session
    from bridge.modules.audit.service import AuditService

    def _write() -> int:
        with get_db_session() as session:
            return AuditService(session).write(audit_data).id

    audit_log_id = run_with_policy(
        self,
        AUDIT_POLICY,
        _write,
        lambda exc, attempts: _record_failed_audit_log(audit_data, exc, attempts),
        action=audit_data.get("action"),
        model=audit_data.get("model"),
    )
    logger.info(
        "audit_log_written",
        audit_log_id=audit_log_id,
        action=audit_data.get("action"),
        model=audit_data.get("model"),
    )
    return {"audit_log_id": audit_log_id}


def _record_failed_audit_log(audit_data: dict[str, Any], exc: BaseException, attempts: int) -> None:
    from bridge.core.database import get_db_session
    from bridge.models.dead_letter import FailedAuditLog

    with get_db_session() as session:
        session.add(FailedAuditLog(audit_data=audit_data, error=str(exc), attempts=attempts))
    logger.critical(
        "audit_log_dead_lettered",
        action=audit_data.get("action"),
        model=audit_data.get("model"),
        attempts=attempts,
        error=str(exc),
    )


@shared_task(name="tasks.cleanup_old_audit_logs")
def cleanup_old_audit_logs(retention_days: int | None = None) -> dict:
    """Beat task: delete audit entries past the retention window."""
    from bridge.core.config import settings
    from bridge.core.database import get_db_session
    from bridge.modules.audit.service import AuditService

    days = retention_days or settings.AUDIT_RETENTION_DAYS
    with get_db_session() as session:
        deleted = AuditService(session).cleanup_old_logs(days)
    return {"deleted": deleted, "retention_days": days}
