"""LGPD consent records."""

from __future__ import annotations

from datetime import datetime, timedelta

from sqlalchemy import BigInteger, CheckConstraint, DateTime, Index, String, Text
from sqlalchemy.orm import Mapped, mapped_column, validates

from bridge.models.base import BaseModel, as_utc, enum_column, utcnow
from bridge.models.enums import ConsentStatus, ConsentType

# Days a granted consent stays valid, per type
CONSENT_VALIDITY_DAYS: dict[ConsentType, int] = {
    ConsentType.DATA_PROCESSING: 365,
    ConsentType.MARKETING: 365,
    ConsentType.HEALTH_DATA: 730,
    ConsentType.ANALYTICS: 365,
}

# Days a record is retained before it is marked expired
CONSENT_RETENTION_DAYS: dict[ConsentType, int] = {
    ConsentType.DATA_PROCESSING: 1825,
    ConsentType.MARKETING: 365,
    ConsentType.HEALTH_DATA: 2555,
    ConsentType.ANALYTICS: 365,
}

DEFAULT_VALIDITY_DAYS = 365


class ConsentRecord(BaseModel):
    """A data subject's consent of one type.

    At most one *active* record per (contact_id, consent_type); that rule is
    enforced by ``ConsentService`` because withdrawn and expired rows stay in
    the table as history.
    """

    __tablename__ = "consent_records"
    __table_args__ = (
        Index("ix_consent_records_contact_type", "contact_id", "consent_type"),
        Index("ix_consent_records_status", "status"),
        CheckConstraint(
            "status != 'granted' OR granted_at IS NOT NULL",
            name="ck_consent_records_granted_at",
        ),
        CheckConstraint(
            "status != 'withdrawn' OR withdrawn_at IS NOT NULL",
            name="ck_consent_records_withdrawn_at",
        ),
    )

    contact_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    consent_type: Mapped[ConsentType] = mapped_column(enum_column(ConsentType), nullable=False)
    status: Mapped[ConsentStatus] = mapped_column(enum_column(ConsentStatus), nullable=False)
    granted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    withdrawn_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    expired_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    withdrawal_reason: Mapped[str | None] = mapped_column(Text)
    consent_text: Mapped[str | None] = mapped_column(Text)
    consent_version: Mapped[str | None] = mapped_column(String(20))
    ip_address: Mapped[str | None] = mapped_column(String(45))
    user_agent: Mapped[str | None] = mapped_column(Text)

    @validates("consent_type")
    def _validate_consent_type(self, key: str, value: str | ConsentType) -> ConsentType:
        return ConsentType.parse(value)  # type: ignore[return-value]

    @validates("status")
    def _validate_status(self, key: str, value: str | ConsentStatus) -> ConsentStatus:
        return ConsentStatus.parse(value)  # type: ignore[return-value]

    # ── Factories / transitions ──────────────────────────────────────────────

    @classmethod
    def grant(
        cls,
        contact_id: int,
        consent_type: str | ConsentType,
        *,
        consent_text: str | None = None,
        consent_version: str | None = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
        granted_at: datetime | None = None,
    ) -> ConsentRecord:
        return cls(
            contact_id=contact_id,
            consent_type=consent_type,
            status=ConsentStatus.GRANTED,
            granted_at=granted_at or utcnow(),
            consent_text=consent_text,
            consent_version=consent_version,
            ip_address=ip_address,
            user_agent=user_agent,
        )

    @classmethod
    def deny(
        cls,
        contact_id: int,
        consent_type: str | ConsentType,
        *,
        consent_text: str | None = None,
        consent_version: str | None = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> ConsentRecord:
        return cls(
            contact_id=contact_id,
            consent_type=consent_type,
            status=ConsentStatus.DENIED,
            consent_text=consent_text,
            consent_version=consent_version,
            ip_address=ip_address,
            user_agent=user_agent,
        )

    def withdraw(self, reason: str | None = None, at: datetime | None = None) -> None:
        self.withdrawn_at = at or utcnow()
        self.withdrawal_reason = reason
        self.status = ConsentStatus.WITHDRAWN

    def expire(self, at: datetime | None = None) -> None:
        self.expired_at = at or utcnow()
        self.status = ConsentStatus.EXPIRED

    # ── Queries ──────────────────────────────────────────────────────────────

    @property
    def validity_days(self) -> int:
        return CONSENT_VALIDITY_DAYS.get(self.consent_type, DEFAULT_VALIDITY_DAYS)

    def expires_at(self) -> datetime | None:
        granted = as_utc(self.granted_at)
        return granted + timedelta(days=self.validity_days) if granted else None

    def is_valid(self, now: datetime | None = None) -> bool:
        if self.status is not ConsentStatus.GRANTED or self.withdrawn_at is not None:
            return False
        expires = self.expires_at()
        return expires is not None and (now or utcnow()) < expires

    def __repr__(self) -> str:
        return (
            f"<ConsentRecord(contact_id={self.contact_id}, "
            f"type={self.consent_type!r}, status={self.status!r})>"
        )
