"""LGPD consent management: grant, withdraw, validity checks, retention."""

from __future__ import annotations

from collections.abc import Callable
from datetime import timedelta
from typing import Any, TypeVar

import structlog
from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from bridge.core.config import settings
from bridge.core.errors import ConsentError, DomainValidationError, UpstreamApiError
from bridge.core.shared_state import SharedState, get_shared_state
from bridge.models.base import utcnow
from bridge.models.consent import CONSENT_RETENTION_DAYS, CONSENT_VALIDITY_DAYS, ConsentRecord
from bridge.models.enums import ConsentStatus, ConsentType
from bridge.modules.audit.service import AuditService
from bridge.services.resilience import CircuitBreaker, RateLimiter

logger = structlog.get_logger()

T = TypeVar("T")

CONSENT_TEXTS: dict[ConsentType, str] = {
    ConsentType.DATA_PROCESSING: (
        "Autorizo o processamento dos meus dados pessoais conforme a "
        "Lei Geral de Proteção de Dados (LGPD)."
    ),
    ConsentType.MARKETING: "Autorizo o envio de comunicações de marketing.",
    ConsentType.HEALTH_DATA: (
        "Autorizo o armazenamento e processamento de dados sensíveis de saúde "
        "para fins de atendimento médico."
    ),
    ConsentType.ANALYTICS: "Autorizo o uso de dados para análise e melhoria dos serviços.",
}


def validity_cache_key(contact_id: int, consent_type: ConsentType) -> str:
    return f"consent:valid:{contact_id}:{consent_type.value}"


def parse_consent_type(value: str | ConsentType) -> ConsentType:
    try:
        return ConsentType.parse(value)  # type: ignore[return-value]
    except DomainValidationError as exc:
        raise ConsentError.invalid_type(str(value)) from exc


class ConsentService:
    """Consent operations share one rate limiter (30/min) and breaker (3 failures)."""

    def __init__(
        self,
        session: Session,
        *,
        state: SharedState | None = None,
        audit: AuditService | None = None,
        user_id: str | None = None,
    ) -> None:
        self.session = session
        self.state = state or get_shared_state()
        self.audit = audit or AuditService()
        self.user_id = user_id
        self.rate_limiter = RateLimiter(
            self.state, "consent", settings.CONSENT_RATE_LIMIT_PER_MINUTE
        )
        self.circuit_breaker = CircuitBreaker(
            self.state,
            "consent",
            threshold=settings.CONSENT_CIRCUIT_BREAKER_THRESHOLD,
            timeout=settings.CONSENT_CIRCUIT_BREAKER_TIMEOUT,
        )

    # ── Protection ───────────────────────────────────────────────────────────

    def _protected(self, operation: str, fn: Callable[[], T]) -> T:
        """Rate-limit and breaker-check a mutating operation.

        Storage failures count against the breaker; consent rule violations do not.
        """
        try:
            self.rate_limiter.hit(operation)
            self.circuit_breaker.before_call(operation)
        except UpstreamApiError as exc:
            code = (
                "CONSENT_RATE_LIMIT_EXCEEDED"
                if exc.status_code == 429
                else "CONSENT_SERVICE_UNAVAILABLE"
            )
            raise ConsentError(exc.message, code, details=exc.details) from exc

        try:
            result = fn()
        except SQLAlchemyError:
            self.session.rollback()
            self.circuit_breaker.record_failure()
            raise
        self.circuit_breaker.record_success()
        return result

    # ── Mutations ────────────────────────────────────────────────────────────

    def grant_consent(
        self,
        contact_id: int,
        consent_type: str | ConsentType,
        *,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> ConsentRecord:
        kind = parse_consent_type(consent_type)

        def _grant() -> ConsentRecord:
            existing = self.get_active_consent(contact_id, kind)
            if existing is not None:
                if existing.is_valid():
                    raise ConsentError.already_exists(contact_id, kind.value)
                # Lapsed past its validity window: close it out before re-granting
                existing.expire()
            record = ConsentRecord.grant(
                contact_id,
                kind,
                consent_text=CONSENT_TEXTS[kind],
                consent_version=settings.CONSENT_VERSION,
                ip_address=ip_address,
                user_agent=user_agent,
            )
            self.session.add(record)
            self.session.commit()
            return record

        record = self._protected("grant_consent", _grant)
        self._invalidate(contact_id, kind)
        self.audit.log_lgpd_event(
            self.user_id,
            "consent_granted",
            contact_id,
            {
                "consent_type": kind.value,
                "consent_id": record.id,
                "consent_version": record.consent_version,
            },
        )
        logger.info(
            "consent_granted", contact_id=contact_id, consent_type=kind.value, consent_id=record.id
        )
        return record

    def withdraw_consent(
        self,
        contact_id: int,
        consent_type: str | ConsentType,
        reason: str | None = None,
    ) -> ConsentRecord:
        kind = parse_consent_type(consent_type)

        def _withdraw() -> ConsentRecord:
            record = self.get_active_consent(contact_id, kind)
            if record is None:
                raise ConsentError.not_found(contact_id, kind.value)
            record.withdraw(reason)
            self.session.commit()
            return record

        record = self._protected("withdraw_consent", _withdraw)
        self._invalidate(contact_id, kind)
        self.audit.log_lgpd_event(
            self.user_id,
            "consent_withdrawn",
            contact_id,
            {"consent_type": kind.value, "consent_id": record.id, "reason": reason},
        )
        logger.info(
            "consent_withdrawn",
            contact_id=contact_id,
            consent_type=kind.value,
            consent_id=record.id,
            reason=reason,
        )
        return record

    def deny_consent(
        self,
        contact_id: int,
        consent_type: str | ConsentType,
        *,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> ConsentRecord:
        """Record a refusal. An active grant of the same type is withdrawn first."""
        kind = parse_consent_type(consent_type)

        def _deny() -> ConsentRecord:
            active = self.get_active_consent(contact_id, kind)
            if active is not None:
                active.withdraw("consent_denied")
            record = ConsentRecord.deny(
                contact_id,
                kind,
                consent_text=CONSENT_TEXTS[kind],
                consent_version=settings.CONSENT_VERSION,
                ip_address=ip_address,
                user_agent=user_agent,
            )
            self.session.add(record)
            self.session.commit()
            return record

        record = self._protected("deny_consent", _deny)
        self._invalidate(contact_id, kind)
        self.audit.log_lgpd_event(
            self.user_id,
            "consent_denied",
            contact_id,
            {"consent_type": kind.value, "consent_id": record.id},
        )
        logger.info(
            "consent_denied", contact_id=contact_id, consent_type=kind.value, consent_id=record.id
        )
        return record

    # ── Queries ──────────────────────────────────────────────────────────────

    def get_active_consent(
        self, contact_id: int, consent_type: str | ConsentType
    ) -> ConsentRecord | None:
        kind = parse_consent_type(consent_type)
        stmt = (
            select(ConsentRecord)
            .where(
                ConsentRecord.contact_id == contact_id,
                ConsentRecord.consent_type == kind,
                ConsentRecord.status == ConsentStatus.GRANTED,
                ConsentRecord.withdrawn_at.is_(None),
            )
            .order_by(ConsentRecord.granted_at.desc())
            .limit(1)
        )
        return self.session.scalars(stmt).first()

    def has_valid_consent(self, contact_id: int, consent_type: str | ConsentType) -> bool:
        kind = parse_consent_type(consent_type)
        key = validity_cache_key(contact_id, kind)
        cached = self.state.get(key)
        if cached is not None:
            return cached == "1"

        record = self.get_active_consent(contact_id, kind)
        now = utcnow()
        valid = record is not None and record.is_valid(now)
        ttl = settings.CONSENT_CACHE_TTL
        if valid:
            # Never cache a positive answer past the consent's own expiry
            remaining = int((record.expires_at() - now).total_seconds())  # type: ignore[union-attr]
            ttl = max(min(ttl, remaining), 1)
        self.state.set(key, "1" if valid else "0", ttl=ttl)
        return valid

    def require_consent(self, contact_id: int, consent_type: str | ConsentType) -> None:
        kind = parse_consent_type(consent_type)
        if not self.has_valid_consent(contact_id, kind):
            raise ConsentError.required(contact_id, kind.value)

    def get_contact_consents(self, contact_id: int) -> list[ConsentRecord]:
        stmt = (
            select(ConsentRecord)
            .where(ConsentRecord.contact_id == contact_id)
            .order_by(ConsentRecord.created_at.desc(), ConsentRecord.id.desc())
        )
        return list(self.session.scalars(stmt))

    def get_consent_stats(self) -> dict[str, dict[str, int]]:
        now = utcnow()
        stats: dict[str, dict[str, int]] = {}
        for kind in ConsentType:
            counts = dict(
                self.session.execute(
                    select(ConsentRecord.status, func.count())
                    .where(ConsentRecord.consent_type == kind)
                    .group_by(ConsentRecord.status)
                ).all()
            )
            cutoff = now - timedelta(days=CONSENT_VALIDITY_DAYS[kind])
            lapsed = self.session.scalar(
                select(func.count())
                .select_from(ConsentRecord)
                .where(
                    ConsentRecord.consent_type == kind,
                    ConsentRecord.status == ConsentStatus.GRANTED,
                    ConsentRecord.granted_at < cutoff,
                )
            )
            stats[kind.value] = {
                "total": sum(counts.values()),
                "granted": counts.get(ConsentStatus.GRANTED, 0),
                "denied": counts.get(ConsentStatus.DENIED, 0),
                "withdrawn": counts.get(ConsentStatus.WITHDRAWN, 0),
                "expired": counts.get(ConsentStatus.EXPIRED, 0),
                "lapsed": lapsed or 0,
            }
        return stats

    # ── Retention ────────────────────────────────────────────────────────────

    def enforce_data_retention(self) -> list[int]:
        """Mark granted consents older than their type's retention period as expired."""
        now = utcnow()
        processed: list[int] = []
        for kind, days in CONSENT_RETENTION_DAYS.items():
            cutoff = now - timedelta(days=days)
            stmt = select(ConsentRecord).where(
                ConsentRecord.consent_type == kind,
                ConsentRecord.status == ConsentStatus.GRANTED,
                ConsentRecord.granted_at < cutoff,
            )
            for record in self.session.scalars(stmt):
                record.expire(now)
                processed.append(record.id)
                self._invalidate(record.contact_id, kind)
        self.session.commit()
        logger.info(
            "consent_retention_enforced",
            processed_consents=len(processed),
            consent_ids=processed,
        )
        return processed

    def _invalidate(self, contact_id: int, kind: ConsentType) -> None:
        self.state.delete(validity_cache_key(contact_id, kind))


def consent_to_dict(record: ConsentRecord) -> dict[str, Any]:
    data = record.to_dict()
    expires = record.expires_at()
    data["expires_at"] = expires.isoformat() if expires else None
    data["is_valid"] = record.is_valid()
    return data
