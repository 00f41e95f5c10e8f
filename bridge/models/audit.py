"""Append-only audit trail."""

from __future__ import annotations

import re
from typing import Any

from sqlalchemy import Index, String, Text, event
from sqlalchemy.orm import Mapped, mapped_column, validates

from bridge.core.errors import DomainValidationError
from bridge.models.base import JSONType, TimestampedModel
from bridge.models.enums import AuditModel

_EVENT_NAME = re.compile(r"^[a-z][a-z0-9_]*$")


class AuditLog(TimestampedModel):
    """Immutable audit log. No updated_at; rows are only bulk-deleted.

    ``action`` is one of ``AuditAction`` for data operations, or a
    snake_case event name (``webhook_processed``, ``consent_granted``) for
    security and LGPD events.
    """

    __tablename__ = "audit_logs"
    __table_args__ = (
        Index("ix_audit_logs_user_id", "user_id"),
        Index("ix_audit_logs_model", "model", "model_id"),
        Index("ix_audit_logs_action", "action"),
        Index("ix_audit_logs_created_at", "created_at"),
    )

    user_id: Mapped[str | None] = mapped_column(String(64))
    action: Mapped[str] = mapped_column(String(100), nullable=False)
    model: Mapped[str] = mapped_column(String(50), nullable=False)
    model_id: Mapped[str | None] = mapped_column(String(64))
    changes: Mapped[dict[str, Any] | None] = mapped_column(JSONType)
    ip_address: Mapped[str | None] = mapped_column(String(45))
    user_agent: Mapped[str | None] = mapped_column(Text)

    @validates("action")
    def _validate_action(self, key: str, value: str) -> str:
        if not value or not _EVENT_NAME.match(value):
            raise DomainValidationError(f"Invalid audit action: {value!r}")
        return value

    @validates("model")
    def _validate_model(self, key: str, value: str) -> str:
        return AuditModel.parse(value).value

    @validates("model_id")
    def _coerce_model_id(self, key: str, value: Any) -> str | None:
        return None if value is None else str(value)

    def __repr__(self) -> str:
        return f"<AuditLog(id={self.id}, action={self.action!r}, model={self.model!r})>"


@event.listens_for(AuditLog, "before_update")
def _reject_audit_update(mapper, connection, target: AuditLog) -> None:  # noqa: ARG001
    raise DomainValidationError("Audit logs are append-only")
