"""Dead-letter tables: payloads whose processing exhausted retries.

Rows are never auto-deleted; an operator replays or discards them.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import BigInteger, DateTime, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from bridge.models.base import JSONType, TimestampedModel, utcnow


class FailedWebhook(TimestampedModel):
    __tablename__ = "failed_webhooks"
    __table_args__ = (
        UniqueConstraint("webhook_id", name="uq_failed_webhooks_webhook_id"),
        Index("ix_failed_webhooks_event_type", "event_type"),
        Index("ix_failed_webhooks_failed_at", "failed_at"),
    )

    webhook_id: Mapped[str] = mapped_column(String(100), nullable=False)
    event_type: Mapped[str] = mapped_column(String(50), nullable=False)
    payload: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False)
    error: Mapped[str] = mapped_column(Text, nullable=False)
    failed_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    ip_address: Mapped[str | None] = mapped_column(String(45))
    user_agent: Mapped[str | None] = mapped_column(Text)

    def __repr__(self) -> str:
        return f"<FailedWebhook(webhook_id={self.webhook_id!r}, event_type={self.event_type!r})>"


class FailedDataDeletion(TimestampedModel):
    __tablename__ = "failed_data_deletions"
    __table_args__ = (Index("ix_failed_data_deletions_contact_id", "contact_id"),)

    contact_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    reason: Mapped[str | None] = mapped_column(Text)
    requested_by: Mapped[str | None] = mapped_column(String(64))
    error: Mapped[str] = mapped_column(Text, nullable=False)
    failed_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=1)


class FailedDataExport(TimestampedModel):
    __tablename__ = "failed_data_exports"
    __table_args__ = (Index("ix_failed_data_exports_export_id", "export_id"),)

    export_id: Mapped[str] = mapped_column(String(100), nullable=False)
    contact_ids: Mapped[list[int]] = mapped_column(JSONType, nullable=False)
    format: Mapped[str] = mapped_column(String(10), nullable=False)
    error: Mapped[str] = mapped_column(Text, nullable=False)
    failed_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=1)


class FailedAuditLog(TimestampedModel):
    __tablename__ = "failed_audit_logs"

    audit_data: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False)
    error: Mapped[str] = mapped_column(Text, nullable=False)
    failed_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
