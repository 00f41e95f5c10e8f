"""Celery tasks for LGPD erasure, exports and consent retention."""

from __future__ import annotations

import structlog
from celery import Task, shared_task

from bridge.core.jobs import (
    BULK_EXPORT_POLICY,
    DELETION_POLICY,
    EXPORT_POLICY,
    JobPolicy,
    current_attempt,
    run_with_policy,
)
from bridge.models.base import utcnow

logger = structlog.get_logger()


# ── Erasure ───────────────────────────────────────────────────────────────────


@shared_task(name="tasks.process_data_deletion", bind=True, max_retries=DELETION_POLICY.max_retries)
def process_data_deletion(  # type: ignore[misc]
    self,
    contact_id: int,
    reason: str | None = None,
    requested_by: str | None = None,
    ip_address: str | None = None,
    user_agent: str | None = None,
) -> dict:
    """Erase a contact's mappings, consents and Contact audit trail in one transaction."""
    from bridge.core.database import get_db_session
    from bridge.modules.audit.service import AuditService
    from bridge.modules.lgpd.service import delete_contact_data

    logger.info("data_deletion_processing", contact_id=contact_id, attempt=current_attempt(self))

    def _delete() -> dict[str, int]:
        with get_db_session() as session:
            return delete_contact_data(session, contact_id)

    def _dead_letter(exc: BaseException, attempts: int) -> None:
        from bridge.models.dead_letter import FailedDataDeletion

        with get_db_session() as session:
            session.add(
                FailedDataDeletion(
                    contact_id=contact_id,
                    reason=reason,
                    requested_by=requested_by,
                    error=str(exc),
                    attempts=attempts,
                )
            )

    counts = run_with_policy(self, DELETION_POLICY, _delete, _dead_letter, contact_id=contact_id)

    AuditService(ip_address=ip_address, user_agent=user_agent).log_security_event(
        "data_deletion_completed",
        {
            "contact_id": contact_id,
            "reason": reason,
            "requested_by": requested_by,
            "deleted_counts": counts,
            "ip": ip_address,
            "user_agent": user_agent,
        },
    )
    return {"contact_id": contact_id, "deleted_counts": counts}


# ── Exports ───────────────────────────────────────────────────────────────────


def _run_export(
    task: Task,
    policy: JobPolicy,
    export_id: str,
    contact_ids: list[int],
    fmt: str,
    options: dict[str, bool],
    ip_address: str | None,
    user_agent: str | None,
    *,
    bulk: bool,
) -> dict:
    from bridge.core.database import get_db_session
    from bridge.modules.audit.service import AuditService
    from bridge.modules.lgpd.service import (
        ExportOptions,
        ExportTracker,
        gather_bulk_data,
        gather_contact_data,
        write_export_file,
    )

    tracker = ExportTracker()
    if tracker.is_cancelled(export_id):
        logger.info("data_export_skipped_cancelled", export_id=export_id)
        return {"export_id": export_id, "status": "cancelled"}

    tracker.update(export_id, status="processing", progress=10)
    opts = ExportOptions(**options)

    def _export() -> str:
        with get_db_session() as session:
            if bulk:
                data = gather_bulk_data(session, contact_ids, fmt, opts)
            else:
                data = gather_contact_data(session, contact_ids[0], opts)
        tracker.update(export_id, progress=70)
        return write_export_file(data, export_id if bulk else contact_ids[0], fmt)

    def _dead_letter(exc: BaseException, attempts: int) -> None:
        from bridge.models.dead_letter import FailedDataExport

        tracker.update(export_id, status="failed", error=str(exc), failed_at=utcnow().isoformat())
        with get_db_session() as session:
            session.add(
                FailedDataExport(
                    export_id=export_id,
                    contact_ids=contact_ids,
                    format=fmt,
                    error=str(exc),
                    attempts=attempts,
                )
            )

    filename = run_with_policy(
        task, policy, _export, _dead_letter, export_id=export_id, contact_count=len(contact_ids)
    )

    if tracker.is_cancelled(export_id):
        logger.info("data_export_cancelled_after_write", export_id=export_id, filename=filename)
        return {"export_id": export_id, "status": "cancelled"}

    metadata = tracker.complete(export_id, filename) or {}
    AuditService(ip_address=ip_address, user_agent=user_agent).log_security_event(
        "bulk_export_completed" if bulk else "data_export_completed",
        {
            "export_id": export_id,
            "contact_ids": contact_ids,
            "format": fmt,
            "filename": filename,
            "ip": ip_address,
            "user_agent": user_agent,
        },
    )
    logger.info("data_export_completed", export_id=export_id, filename=filename, bulk=bulk)
    return {
        "export_id": export_id,
        "status": "completed",
        "filename": filename,
        "download_url": metadata.get("download_url"),
    }


@shared_task(name="tasks.process_data_export", bind=True, max_retries=EXPORT_POLICY.max_retries)
def process_data_export(  # type: ignore[misc]
    self,
    export_id: str,
    contact_id: int,
    fmt: str = "json",
    options: dict[str, bool] | None = None,
    ip_address: str | None = None,
    user_agent: str | None = None,
) -> dict:
    """Write one contact's portable export file."""
    return _run_export(
        self,
        EXPORT_POLICY,
        export_id,
        [contact_id],
        fmt,
        options or {},
        ip_address,
        user_agent,
        bulk=False,
    )


@shared_task(
    name="tasks.process_bulk_data_export",
    bind=True,
    max_retries=BULK_EXPORT_POLICY.max_retries,
)
def process_bulk_data_export(  # type: ignore[misc]
    self,
    export_id: str,
    contact_ids: list[int],
    fmt: str = "json",
    options: dict[str, bool] | None = None,
    ip_address: str | None = None,
    user_agent: str | None = None,
) -> dict:
    """Write one export file covering many contacts."""
    return _run_export(
        self,
        BULK_EXPORT_POLICY,
        export_id,
        contact_ids,
        fmt,
        options or {},
        ip_address,
        user_agent,
        bulk=True,
    )


# ── Retention ─────────────────────────────────────────────────────────────────


@shared_task(name="tasks.enforce_consent_retention")
def enforce_consent_retention() -> dict:
    """Beat task: expire consents held past their type's retention period."""
    from bridge.core.database import get_db_session
    from bridge.modules.consent.service import ConsentService

    with get_db_session() as session:
        processed = ConsentService(session).enforce_data_retention()
    return {"processed_consents": len(processed), "consent_ids": processed}
