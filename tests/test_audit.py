"""Tests for the audit trail: emitters, persistence, worker tasks and middleware."""

from datetime import datetime, timedelta
from unittest.mock import patch

import pytest
from celery.exceptions import Retry
from httpx import AsyncClient
from sqlalchemy import select

from bridge.core.errors import DomainValidationError
from bridge.models.audit import AuditLog
from bridge.models.base import utcnow
from bridge.models.dead_letter import FailedAuditLog
from bridge.modules.audit.service import (
    AuditService,
    build_audit_data,
    enqueue_audit_log,
    should_log_api_access,
)
from bridge.modules.audit.tasks import cleanup_old_audit_logs, process_audit_log


def run_task(task, *args, retries: int = 0):
    task.push_request(retries=retries)
    try:
        return task.run(*args)
    finally:
        task.pop_request()


# ── Emitters ──────────────────────────────────────────────────────────────────


def test_lgpd_event_targets_the_contact(audit_queue) -> None:
    AuditService(ip_address="10.0.0.1", user_agent="curl").log_lgpd_event(
        "operator-1", "consent_granted", 7, {"consent_type": "marketing"}
    )

    entry = audit_queue.call_args.args[0]
    assert entry["model"] == "Contact"
    assert entry["model_id"] == "7"
    assert entry["user_id"] == "operator-1"
    assert entry["ip_address"] == "10.0.0.1"
    assert entry["changes"]["consent_type"] == "marketing"
    assert entry["changes"]["lgpd_event"] is True
    assert audit_queue.call_args.kwargs == {"high_priority": False}


def test_security_events_are_high_priority(audit_queue) -> None:
    AuditService().log_security_event("webhook_received", {"webhook_id": "x"})

    entry = audit_queue.call_args.args[0]
    assert (entry["action"], entry["model"], entry["user_id"]) == ("webhook_received", "Security", None)
    assert audit_queue.call_args.kwargs == {"high_priority": True}


def test_modification_lists_changed_fields(audit_queue) -> None:
    AuditService().log_data_modification(
        "operator-1", "Lead", 9, "update", {"stage": "Waiting", "title": "A"}, {"stage": "Follow-up", "title": "A"}
    )

    assert audit_queue.call_args.args[0]["changes"]["modified_fields"] == ["stage"]


def test_deletion_and_authentication_entries(audited) -> None:
    service = AuditService()
    service.log_data_deletion("operator-1", "Contact", 7, {"name": "Ana"})
    service.log_authentication("operator-1", "login")
    service.log_data_access("operator-1", "Lead", 9, "read")

    assert audited() == ["delete", "login", "read"]


@pytest.mark.parametrize(
    ("endpoint", "status", "expected"),
    [
        ("/v1/lgpd/consent", 200, True),
        ("/v1/webhooks/chatwoot/message-created", 202, True),
        ("/v1/other", 200, False),
        ("/v1/other", 404, True),
    ],
)
def test_api_access_filter(endpoint, status, expected) -> None:
    assert should_log_api_access(endpoint, status) is expected


def test_api_access_skips_unremarkable_calls(audit_queue) -> None:
    assert AuditService().log_api_access(None, "/v1/other", "GET", 200, 1.5) is None
    audit_queue.assert_not_called()


def test_broker_outage_never_fails_the_caller() -> None:
    with (
        patch.object(process_audit_log, "apply_async", side_effect=ConnectionError("broker down")),
        patch("bridge.modules.audit.service.sentry_sdk.capture_exception") as captured,
    ):
        enqueue_audit_log(build_audit_data(user_id=None, action="read", model="Lead"))

    captured.assert_called_once()


# ── Persistence ───────────────────────────────────────────────────────────────


def test_write_and_query(db) -> None:
    service = AuditService(db)
    service.write(build_audit_data(user_id="operator-1", action="read", model="Lead", model_id=9))
    service.write(build_audit_data(user_id="operator-1", action="update", model="Lead", model_id=9))
    service.write(build_audit_data(user_id="operator-2", action="read", model="Lead", model_id=10))
    db.commit()

    mine = service.get_user_audit_logs("operator-1")
    lead = service.get_model_audit_logs("Lead", 9)

    assert {log["action"] for log in mine} == {"read", "update"}
    assert len(lead) == 2


def test_cleanup_deletes_only_old_entries(db) -> None:
    service = AuditService(db)
    old = build_audit_data(user_id=None, action="read", model="Lead")
    old["created_at"] = (utcnow() - timedelta(days=400)).isoformat()
    service.write(old)
    service.write(build_audit_data(user_id=None, action="read", model="Lead"))
    db.commit()

    assert service.cleanup_old_logs(365) == 1
    db.commit()
    assert len(db.scalars(select(AuditLog)).all()) == 1


def test_queries_need_a_session() -> None:
    with pytest.raises(RuntimeError):
        AuditService().get_user_audit_logs("operator-1")


# ── Worker tasks ──────────────────────────────────────────────────────────────


def test_process_audit_log_writes_the_entry(db) -> None:
    data = build_audit_data(user_id="operator-1", action="export", model="Contact", model_id=7)

    result = run_task(process_audit_log, data)

    row = db.get(AuditLog, result["audit_log_id"])
    assert (row.action, row.model, row.model_id) == ("export", "Contact", "7")
    assert isinstance(row.created_at, datetime)


def test_invalid_entry_is_dead_lettered_without_retry(db) -> None:
    data = build_audit_data(user_id=None, action="read", model="Invoice")

    with patch.object(process_audit_log, "retry") as retry:
        with pytest.raises(DomainValidationError):
            run_task(process_audit_log, data)

    retry.assert_not_called()
    failed = db.scalar(select(FailedAuditLog))
    assert failed.audit_data["model"] == "Invoice"
    assert failed.attempts == 1


def test_storage_error_is_retried(db) -> None:
    data = build_audit_data(user_id=None, action="read", model="Lead")

    with (
        patch("bridge.modules.audit.service.AuditService.write", side_effect=OSError("db down")),
        patch.object(process_audit_log, "retry", side_effect=Retry("retry")) as retry,
    ):
        with pytest.raises(Retry):
            run_task(process_audit_log, data)

    assert retry.call_args.kwargs["countdown"] == 60


def test_cleanup_task_uses_configured_retention(db) -> None:
    assert cleanup_old_audit_logs.run() == {"deleted": 0, "retention_days": 365}
    assert cleanup_old_audit_logs.run(30)["retention_days"] == 30


# ── Middleware ────────────────────────────────────────────────────────────────


@pytest.mark.anyio
async def test_errors_are_audited_everywhere(client: AsyncClient, audit_queue) -> None:
    await client.get("/v1/does-not-exist", headers={"User-Agent": "probe"})

    entry = audit_queue.call_args.args[0]
    assert entry["action"] == "api_access"
    assert entry["changes"]["status_code"] == 404
    assert entry["changes"]["endpoint"] == "/v1/does-not-exist"
    assert entry["user_agent"] == "probe"


@pytest.mark.anyio
async def test_health_is_not_audited(client: AsyncClient, audit_queue) -> None:
    with (
        patch("bridge.main._probe_upstream", return_value={"status": "healthy"}),
        patch("redis.Redis.from_url"),
    ):
        await client.get("/health")

    audit_queue.assert_not_called()
