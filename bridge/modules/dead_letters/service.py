"""Read access to the dead-letter tables that are not webhook-specific."""

from __future__ import annotations

from typing import TypeVar

from sqlalchemy import select
from sqlalchemy.orm import Session

from bridge.models.dead_letter import FailedAuditLog, FailedDataDeletion, FailedDataExport

M = TypeVar("M", FailedDataDeletion, FailedDataExport, FailedAuditLog)


class DeadLetterService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def _list(self, model: type[M], limit: int, offset: int) -> list[M]:
        stmt = (
            select(model)
            .order_by(model.failed_at.desc(), model.id.desc())
            .offset(offset)
            .limit(limit)
        )
        return list(self.session.scalars(stmt))

    def list_failed_deletions(self, limit: int = 100, offset: int = 0) -> list[FailedDataDeletion]:
        return self._list(FailedDataDeletion, limit, offset)

    def list_failed_exports(self, limit: int = 100, offset: int = 0) -> list[FailedDataExport]:
        return self._list(FailedDataExport, limit, offset)

    def list_failed_audit_logs(self, limit: int = 100, offset: int = 0) -> list[FailedAuditLog]:
        return self._list(FailedAuditLog, limit, offset)
