"""Tests for LGPD consent management."""

from datetime import timedelta

import pytest
from sqlalchemy import select

from bridge.core.config import settings
from bridge.core.errors import ConsentError
from bridge.models.base import utcnow
from bridge.models.consent import ConsentRecord
from bridge.models.enums import ConsentStatus, ConsentType
from bridge.modules.consent.service import ConsentService, consent_to_dict


@pytest.fixture
def consents(db, state) -> ConsentService:
    return ConsentService(db, state=state, user_id="operator-1")


def _aged(db, contact_id: int, kind: ConsentType, days: int) -> ConsentRecord:
    record = ConsentRecord.grant(contact_id, kind, granted_at=utcnow() - timedelta(days=days))
    db.add(record)
    db.commit()
    return record


def test_grant_then_withdraw_flips_validity(consents, audited) -> None:
    record = consents.grant_consent(7, "data_processing", ip_address="10.0.0.1", user_agent="Chatwoot")

    assert record.status is ConsentStatus.GRANTED
    assert record.consent_text.startswith("Autorizo o processamento")
    assert record.consent_version == settings.CONSENT_VERSION
    assert consents.has_valid_consent(7, ConsentType.DATA_PROCESSING) is True

    withdrawn = consents.withdraw_consent(7, "data_processing", "changed my mind")

    assert withdrawn.id == record.id
    assert withdrawn.withdrawal_reason == "changed my mind"
    assert consents.has_valid_consent(7, "data_processing") is False
    assert audited() == ["consent_granted", "consent_withdrawn"]


def test_second_active_grant_is_rejected(consents) -> None:
    consents.grant_consent(7, "marketing")

    with pytest.raises(ConsentError) as exc_info:
        consents.grant_consent(7, "marketing")

    assert exc_info.value.error_code == "CONSENT_ALREADY_EXISTS"
    assert exc_info.value.status_code == 409


def test_types_are_independent(consents) -> None:
    consents.grant_consent(7, "marketing")

    assert consents.has_valid_consent(7, "analytics") is False
    assert consents.has_valid_consent(8, "marketing") is False


def test_withdraw_without_active_consent(consents) -> None:
    with pytest.raises(ConsentError) as exc_info:
        consents.withdraw_consent(7, "marketing")

    assert exc_info.value.error_code == "CONSENT_NOT_FOUND"


def test_unknown_type_rejected(consents) -> None:
    with pytest.raises(ConsentError) as exc_info:
        consents.grant_consent(7, "telemarketing")

    assert exc_info.value.error_code == "CONSENT_INVALID_TYPE"


def test_lapsed_consent_is_invalid_and_can_be_regranted(consents, db) -> None:
    old = _aged(db, 7, ConsentType.MARKETING, days=366)

    assert consents.has_valid_consent(7, "marketing") is False

    fresh = consents.grant_consent(7, "marketing")

    assert fresh.id != old.id
    assert old.status is ConsentStatus.EXPIRED
    assert consents.has_valid_consent(7, "marketing") is True


def test_validity_is_cached_until_ttl(consents, db, clock) -> None:
    assert consents.has_valid_consent(7, "analytics") is False

    # Written behind the service's back: the cached answer stands until it expires
    db.add(ConsentRecord.grant(7, ConsentType.ANALYTICS))
    db.commit()
    assert consents.has_valid_consent(7, "analytics") is False

    clock.advance(settings.CONSENT_CACHE_TTL + 1)
    assert consents.has_valid_consent(7, "analytics") is True


def test_require_consent(consents) -> None:
    with pytest.raises(ConsentError) as exc_info:
        consents.require_consent(7, "health_data")
    assert exc_info.value.error_code == "CONSENT_REQUIRED"

    consents.grant_consent(7, "health_data")
    consents.require_consent(7, "health_data")


def test_deny_withdraws_active_grant(consents, audited) -> None:
    grant = consents.grant_consent(7, "marketing")

    denial = consents.deny_consent(7, "marketing")

    assert denial.status is ConsentStatus.DENIED
    assert grant.status is ConsentStatus.WITHDRAWN
    assert grant.withdrawal_reason == "consent_denied"
    assert consents.has_valid_consent(7, "marketing") is False
    assert audited()[-1] == "consent_denied"


def test_history_lists_every_record(consents) -> None:
    consents.grant_consent(7, "marketing")
    consents.withdraw_consent(7, "marketing")
    consents.grant_consent(7, "marketing")

    history = consents.get_contact_consents(7)

    assert [r.status for r in history] == [ConsentStatus.GRANTED, ConsentStatus.WITHDRAWN]
    data = consent_to_dict(history[0])
    assert data["is_valid"] is True
    assert data["expires_at"] is not None


def test_rate_limit_applies_to_mutations(db, state, monkeypatch) -> None:
    monkeypatch.setattr(settings, "CONSENT_RATE_LIMIT_PER_MINUTE", 1)
    service = ConsentService(db, state=state)
    service.grant_consent(7, "marketing")

    with pytest.raises(ConsentError) as exc_info:
        service.grant_consent(8, "marketing")

    assert exc_info.value.error_code == "CONSENT_RATE_LIMIT_EXCEEDED"
    assert exc_info.value.status_code == 429


def test_stats_count_by_status(consents, db) -> None:
    consents.grant_consent(7, "marketing")
    consents.withdraw_consent(7, "marketing")
    consents.grant_consent(8, "marketing")
    consents.deny_consent(9, "marketing")
    _aged(db, 10, ConsentType.MARKETING, days=400)

    stats = consents.get_consent_stats()["marketing"]

    assert stats == {
        "total": 5,
        "granted": 2,
        "denied": 1,
        "withdrawn": 1,
        "expired": 0,
        "lapsed": 1,
    }


def test_retention_expires_only_past_type_period(consents, db) -> None:
    marketing = _aged(db, 7, ConsentType.MARKETING, days=366)
    processing = _aged(db, 7, ConsentType.DATA_PROCESSING, days=366)

    processed = consents.enforce_data_retention()

    assert processed == [marketing.id]
    db.expire_all()
    statuses = dict(db.execute(select(ConsentRecord.id, ConsentRecord.status)).all())
    assert statuses[marketing.id] is ConsentStatus.EXPIRED
    assert statuses[processing.id] is ConsentStatus.GRANTED
