"""Tests for the webhook event handlers against a mocked Krayin."""

import httpx
import pytest
from sqlalchemy import func, select

from bridge.core.errors import ConsentError, DomainValidationError, UpstreamApiError
from bridge.models.dead_letter import FailedWebhook
from bridge.models.enums import ConversationStatus, MessageType
from bridge.models.mappings import (
    ActivityMapping,
    ContactMapping,
    ConversationMapping,
    StageChangeLog,
)
from bridge.modules.webhooks.handlers import (
    MISSING_CONVERSATION_ERROR,
    WebhookContext,
    handle_conversation_created,
    handle_conversation_status_changed,
    handle_message_created,
    stage_for_status,
)

CONVERSATION_CREATED = {
    "event": "conversation_created",
    "id": 42,
    "account_id": 1,
    "status": "open",
    "contact": {"id": 7, "name": "Ana", "email": "ana@example.com", "phone_number": "+5511999990000"},
}

MESSAGE_CREATED = {
    "event": "message_created",
    "id": 555,
    "conversation_id": 42,
    "message_type": "incoming",
    "content_type": "text",
    "content": "hi",
    "sender": {"name": "Ana", "type": "contact"},
    "created_at": "2024-01-01T00:00:00Z",
}

CHANGED_AT = "2024-01-01T10:00:00Z"


def ctx(webhook_id: str = "wh-1", attempt: int = 1) -> WebhookContext:
    return WebhookContext(webhook_id=webhook_id, ip_address="10.0.0.1", user_agent="Chatwoot", attempt=attempt)


@pytest.fixture
def conversation(db) -> ConversationMapping:
    mapping = ConversationMapping(chatwoot_conversation_id=42, krayin_lead_id=9)
    db.add(mapping)
    db.commit()
    return mapping


def _count(db, model) -> int:
    return db.scalar(select(func.count()).select_from(model))


# ── conversation_created ──────────────────────────────────────────────────────


def test_conversation_created_creates_lead_and_mappings(db, krayin, upstream) -> None:
    upstream.queue(httpx.Response(201, json={"data": {"id": 9}}))

    result = handle_conversation_created(db, krayin, CONVERSATION_CREATED, ctx("conversation_created:42"))
    db.commit()

    assert result.status == "created"
    assert result.audit["krayin_lead_id"] == 9
    lead = upstream.json_body()
    assert lead["title"] == "Ana - Consulta via Chat"
    assert lead["person"]["emails"] == ["ana@example.com"]
    assert lead["custom_fields"]["chatwoot_contact_id"] == 7
    assert upstream.requests[0].headers["X-Idempotency-Key"] == "conversation_created:42"

    contact = db.scalar(select(ContactMapping))
    conversation = db.scalar(select(ConversationMapping))
    assert (contact.chatwoot_contact_id, contact.krayin_lead_id) == (7, 9)
    assert (conversation.chatwoot_conversation_id, conversation.krayin_lead_id) == (42, 9)


def test_conversation_created_twice_calls_krayin_once(db, krayin, upstream) -> None:
    upstream.queue(httpx.Response(201, json={"data": {"id": 9}}))
    handle_conversation_created(db, krayin, CONVERSATION_CREATED, ctx())
    db.commit()

    again = handle_conversation_created(db, krayin, CONVERSATION_CREATED, ctx(attempt=2))

    assert again.status == "skipped"
    assert again.audit is None
    assert len(upstream.requests) == 1
    assert _count(db, ContactMapping) == 1


def test_known_contact_new_conversation_is_linked(db, krayin, upstream) -> None:
    db.add(ContactMapping(chatwoot_contact_id=7, krayin_lead_id=9))
    db.commit()

    result = handle_conversation_created(db, krayin, {**CONVERSATION_CREATED, "id": 43}, ctx())
    db.commit()

    assert result.status == "linked"
    assert upstream.requests == []
    assert db.scalar(select(ConversationMapping.krayin_lead_id)) == 9


def test_lead_without_id_is_an_upstream_error(db, krayin, upstream) -> None:
    upstream.queue(httpx.Response(200, json={"data": {}}))

    with pytest.raises(UpstreamApiError) as exc_info:
        handle_conversation_created(db, krayin, CONVERSATION_CREATED, ctx())

    assert exc_info.value.is_retryable
    db.rollback()
    assert _count(db, ContactMapping) == 0


def test_invalid_payload_is_terminal(db, krayin) -> None:
    with pytest.raises(DomainValidationError) as exc_info:
        handle_conversation_created(db, krayin, {"id": 42, "contact": {"id": 7}}, ctx())

    assert not exc_info.value.is_retryable


def test_consent_gate_blocks_lead_creation(db, krayin, upstream, monkeypatch) -> None:
    from bridge.core.config import settings

    monkeypatch.setattr(settings, "WEBHOOK_REQUIRE_CONSENT", True)

    with pytest.raises(ConsentError) as exc_info:
        handle_conversation_created(db, krayin, CONVERSATION_CREATED, ctx())

    assert exc_info.value.error_code == "CONSENT_REQUIRED"
    assert upstream.requests == []


# ── message_created ───────────────────────────────────────────────────────────


def test_message_becomes_activity_on_the_conversation_lead(db, krayin, upstream, conversation) -> None:
    upstream.queue(httpx.Response(201, json={"data": {"id": 1001}}))

    result = handle_message_created(db, krayin, MESSAGE_CREATED, ctx("message_created:555"))
    db.commit()
    db.refresh(conversation)

    assert result.status == "created"
    activity = db.scalar(select(ActivityMapping))
    assert activity.chatwoot_message_id == 555
    assert activity.krayin_lead_id == 9
    assert activity.krayin_activity_id == 1001
    assert activity.message_type is MessageType.INCOMING
    assert conversation.message_count == 1
    assert conversation.last_message_at is not None
    assert conversation.first_response_at is None

    body = upstream.json_body()
    assert body["lead_id"] == 9
    assert body["type"] == "call"
    assert body["title"] == "Mensagem recebida de Ana"
    assert body["description"].endswith("Mensagem: hi")


def test_redelivered_message_is_skipped(db, krayin, upstream, conversation) -> None:
    upstream.queue(httpx.Response(201, json={"data": {"id": 1001}}))
    handle_message_created(db, krayin, MESSAGE_CREATED, ctx())
    db.commit()

    again = handle_message_created(db, krayin, MESSAGE_CREATED, ctx(attempt=2))
    db.commit()
    db.refresh(conversation)

    assert again.status == "skipped"
    assert again.details == {"krayin_activity_id": 1001}
    assert len(upstream.requests) == 1
    assert conversation.message_count == 1


def test_outgoing_message_records_first_response(db, krayin, upstream, conversation) -> None:
    upstream.queue(httpx.Response(201, json={"data": {"id": 1002}}))
    payload = {**MESSAGE_CREATED, "id": 556, "message_type": "outgoing", "sender": {"name": "Bia", "type": "agent"}}

    handle_message_created(db, krayin, payload, ctx())
    db.commit()

    assert conversation.first_response_at is not None
    assert upstream.json_body()["type"] == "email"


def test_attachment_message_description(db, krayin, upstream, conversation) -> None:
    upstream.queue(httpx.Response(201, json={"data": {"id": 1003}}))
    payload = {**MESSAGE_CREATED, "id": 557, "content_type": "image", "content": None}

    handle_message_created(db, krayin, payload, ctx())

    assert upstream.json_body()["description"].endswith("Arquivo anexado")


def test_message_without_conversation_is_dead_lettered(db, krayin, upstream) -> None:
    result = handle_message_created(db, krayin, MESSAGE_CREATED, ctx("message_created:555", attempt=1))
    db.commit()

    assert result.status == "dead_lettered"
    assert upstream.requests == []
    failed = db.scalar(select(FailedWebhook))
    assert failed.webhook_id == "message_created:555"
    assert failed.event_type == "message_created"
    assert failed.error == MISSING_CONVERSATION_ERROR
    assert failed.payload["id"] == 555
    assert _count(db, ActivityMapping) == 0


# ── conversation_status_changed ───────────────────────────────────────────────


@pytest.mark.parametrize(
    ("status", "stage_id", "name"),
    [
        ("open", 2, "In Progress"),
        ("resolved", 3, "Follow-up"),
        ("pending", 4, "Waiting"),
        ("snoozed", 4, "Waiting"),
    ],
)
def test_stage_for_status(status, stage_id, name) -> None:
    stage = stage_for_status(status)
    assert (stage.stage_id, stage.name) == (stage_id, name)


def test_status_change_moves_lead_and_logs(db, krayin, upstream, conversation) -> None:
    payload = {
        "event": "conversation_status_changed",
        "id": 42,
        "status": "resolved",
        "previous_status": "open",
        "changed_at": CHANGED_AT,
    }

    result = handle_conversation_status_changed(db, krayin, payload, ctx("status-1"))
    db.commit()

    assert result.status == "updated"
    assert upstream.requests[0].method == "PUT"
    assert upstream.json_body() == {"lead_pipeline_stage_id": 3}
    assert conversation.status is ConversationStatus.RESOLVED
    assert conversation.resolved_at is not None
    log = db.scalar(select(StageChangeLog))
    assert (log.previous_stage, log.new_stage) == ("In Progress", "Follow-up")
    assert (log.previous_status, log.new_status) == ("open", "resolved")
    assert log.webhook_id == "status-1"
    assert result.audit["new_stage"] == "Follow-up"


def test_status_change_redelivery_is_skipped(db, krayin, upstream, conversation) -> None:
    payload = {"id": 42, "status": "pending", "changed_at": CHANGED_AT}
    handle_conversation_status_changed(db, krayin, payload, ctx("status-2"))
    db.commit()

    again = handle_conversation_status_changed(db, krayin, payload, ctx("status-2"))

    assert again.status == "skipped"
    assert len(upstream.requests) == 1
    assert _count(db, StageChangeLog) == 1


def test_status_change_without_conversation_is_dead_lettered(db, krayin, upstream) -> None:
    payload = {"id": 99, "status": "open", "changed_at": CHANGED_AT}
    result = handle_conversation_status_changed(db, krayin, payload, ctx("status-3"))
    db.commit()

    assert result.status == "dead_lettered"
    assert db.scalar(select(FailedWebhook.event_type)) == "conversation_status_changed"


def test_status_change_requires_changed_at(db, krayin, upstream, conversation) -> None:
    with pytest.raises(DomainValidationError):
        handle_conversation_status_changed(db, krayin, {"id": 42, "status": "resolved"}, ctx("status-4"))

    assert upstream.requests == []
