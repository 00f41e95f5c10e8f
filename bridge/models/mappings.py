"""Chatwoot <-> Krayin correspondence tables.

Natural keys (``chatwoot_*_id``) carry UNIQUE constraints so that two
concurrent deliveries of the same webhook cannot both pass the handler's
check-then-insert; the loser fails on commit and is retried into the
idempotency short-circuit.
"""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import (
    BigInteger,
    CheckConstraint,
    DateTime,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, validates

from bridge.models.base import BaseModel, TimestampedModel, as_utc, enum_column, utcnow
from bridge.models.enums import ConversationStatus, MessageType, TriggerSource


class ContactMapping(BaseModel):
    """One Chatwoot contact and the Krayin lead/person created for it."""

    __tablename__ = "contact_mappings"
    __table_args__ = (
        UniqueConstraint("chatwoot_contact_id", name="uq_contact_mappings_chatwoot_contact_id"),
        Index("ix_contact_mappings_krayin_lead_id", "krayin_lead_id"),
        CheckConstraint(
            "krayin_lead_id IS NOT NULL OR krayin_person_id IS NOT NULL",
            name="ck_contact_mappings_has_krayin_id",
        ),
    )

    chatwoot_contact_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    krayin_lead_id: Mapped[int | None] = mapped_column(BigInteger)
    krayin_person_id: Mapped[int | None] = mapped_column(BigInteger)
    contact_name: Mapped[str | None] = mapped_column(String(255))
    contact_email: Mapped[str | None] = mapped_column(String(255))
    contact_phone: Mapped[str | None] = mapped_column(String(50))

    def __repr__(self) -> str:
        return (
            f"<ContactMapping(chatwoot_contact_id={self.chatwoot_contact_id}, "
            f"krayin_lead_id={self.krayin_lead_id})>"
        )


class ConversationMapping(BaseModel):
    """One Chatwoot conversation attached to a Krayin lead."""

    __tablename__ = "conversation_mappings"
    __table_args__ = (
        UniqueConstraint(
            "chatwoot_conversation_id", name="uq_conversation_mappings_chatwoot_conversation_id"
        ),
        Index("ix_conversation_mappings_krayin_lead_id", "krayin_lead_id"),
        Index("ix_conversation_mappings_status", "status"),
    )

    chatwoot_conversation_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    krayin_lead_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    status: Mapped[ConversationStatus] = mapped_column(
        enum_column(ConversationStatus),
        nullable=False,
        default=ConversationStatus.OPEN,
        server_default=ConversationStatus.OPEN.value,
    )
    message_count: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0, server_default="0"
    )
    last_message_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    last_activity_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    first_response_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    @validates("status")
    def _validate_status(self, key: str, value: str | ConversationStatus) -> ConversationStatus:
        status = ConversationStatus.parse(value)
        # resolved_at records the first resolution and survives a reopen
        if status is ConversationStatus.RESOLVED and self.resolved_at is None:
            self.resolved_at = utcnow()
        return status

    def update_status(self, status: str | ConversationStatus) -> ConversationStatus:
        previous = self.status
        self.status = status  # type: ignore[assignment]
        return previous

    def mark_as_resolved(self) -> None:
        self.update_status(ConversationStatus.RESOLVED)

    def mark_as_open(self) -> None:
        self.update_status(ConversationStatus.OPEN)

    def set_first_response(self, at: datetime | None = None) -> None:
        if self.first_response_at is None:
            self.first_response_at = at or utcnow()

    def duration_minutes(self, now: datetime | None = None) -> int | None:
        """Minutes from creation to resolution (or to now while unresolved)."""
        start = as_utc(self.created_at)
        if start is None:
            return None
        end = as_utc(self.resolved_at) or now or utcnow()
        return int((end - start).total_seconds() // 60)

    def response_time_minutes(self) -> int | None:
        start = as_utc(self.created_at)
        first = as_utc(self.first_response_at)
        if start is None or first is None:
            return None
        return int((first - start).total_seconds() // 60)

    def __repr__(self) -> str:
        return (
            f"<ConversationMapping(chatwoot_conversation_id={self.chatwoot_conversation_id}, "
            f"status={self.status!r})>"
        )


class ActivityMapping(TimestampedModel):
    """One Chatwoot message and the Krayin activity it produced. Immutable."""

    __tablename__ = "activity_mappings"
    __table_args__ = (
        UniqueConstraint("chatwoot_message_id", name="uq_activity_mappings_chatwoot_message_id"),
        Index("ix_activity_mappings_conversation_id", "conversation_id"),
        Index("ix_activity_mappings_krayin_lead_id", "krayin_lead_id"),
    )

    chatwoot_message_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    krayin_activity_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    conversation_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    krayin_lead_id: Mapped[int | None] = mapped_column(BigInteger)
    message_type: Mapped[MessageType] = mapped_column(enum_column(MessageType), nullable=False)
    content_type: Mapped[str | None] = mapped_column(String(50))
    content: Mapped[str | None] = mapped_column(Text)
    sender_name: Mapped[str | None] = mapped_column(String(255))
    sender_type: Mapped[str | None] = mapped_column(String(50))

    @validates("message_type")
    def _validate_message_type(self, key: str, value: str | MessageType) -> MessageType:
        return MessageType.parse(value)  # type: ignore[return-value]

    def __repr__(self) -> str:
        return (
            f"<ActivityMapping(chatwoot_message_id={self.chatwoot_message_id}, "
            f"krayin_activity_id={self.krayin_activity_id})>"
        )


class StageChangeLog(TimestampedModel):
    """Append-only record of pipeline-stage moves caused by status changes."""

    __tablename__ = "stage_change_logs"
    __table_args__ = (
        UniqueConstraint(
            "webhook_id", "chatwoot_conversation_id", name="uq_stage_change_logs_webhook_conversation"
        ),
        Index("ix_stage_change_logs_krayin_lead_id", "krayin_lead_id"),
        Index("ix_stage_change_logs_changed_at", "changed_at"),
    )

    krayin_lead_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    chatwoot_conversation_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    previous_stage: Mapped[str | None] = mapped_column(String(100))
    new_stage: Mapped[str] = mapped_column(String(100), nullable=False)
    previous_status: Mapped[str | None] = mapped_column(String(32))
    new_status: Mapped[str] = mapped_column(String(32), nullable=False)
    changed_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    webhook_id: Mapped[str | None] = mapped_column(String(100))
    ip_address: Mapped[str | None] = mapped_column(String(45))
    user_agent: Mapped[str | None] = mapped_column(Text)
    trigger_source: Mapped[TriggerSource] = mapped_column(
        enum_column(TriggerSource),
        nullable=False,
        default=TriggerSource.WEBHOOK,
        server_default=TriggerSource.WEBHOOK.value,
    )

    @validates("trigger_source")
    def _validate_trigger_source(self, key: str, value: str | TriggerSource) -> TriggerSource:
        return TriggerSource.parse(value)  # type: ignore[return-value]

    def __repr__(self) -> str:
        return (
            f"<StageChangeLog(lead={self.krayin_lead_id}, "
            f"{self.previous_stage!r} -> {self.new_stage!r})>"
        )
