"""Tests for webhook intake over HTTP: signature checks, dedup and status."""

import json
import time
from unittest.mock import patch

import pytest
from httpx import AsyncClient

from bridge.models.dead_letter import FailedWebhook
from bridge.modules.webhooks.service import mark_webhook_completed

CONVERSATION_URL = "/v1/webhooks/chatwoot/conversation-created"
MESSAGE_URL = "/v1/webhooks/chatwoot/message-created"
STATUS_URL = "/v1/webhooks/chatwoot/conversation-status-changed"

CONVERSATION = {"event": "conversation_created", "id": 42, "contact": {"id": 7, "name": "Ana"}}


def encode(payload: dict) -> bytes:
    return json.dumps(payload).encode()


@pytest.fixture
def dispatched():
    with patch("bridge.modules.webhooks.service.dispatch_webhook") as mock:
        yield mock


# ── Signature middleware ──────────────────────────────────────────────────────


@pytest.mark.anyio
async def test_signed_delivery_is_queued(client: AsyncClient, sign, dispatched, audited) -> None:
    body = encode(CONVERSATION)

    resp = await client.post(
        CONVERSATION_URL,
        content=body,
        headers={**sign(body), "X-Forwarded-For": "203.0.113.5, 10.0.0.1", "User-Agent": "Chatwoot"},
    )

    assert resp.status_code == 202
    data = resp.json()
    assert data["success"] is True
    assert data["webhook_id"] == "conversation_created:42"
    assert data["processing_status"] == "queued"
    event, webhook_id, payload, ip, ua = dispatched.call_args.args
    assert event.value == "conversation_created"
    assert webhook_id == "conversation_created:42"
    assert payload["contact"]["name"] == "Ana"
    assert (ip, ua) == ("203.0.113.5", "Chatwoot")
    assert audited() == ["webhook_received", "api_access"]


@pytest.mark.anyio
async def test_missing_signature_headers(client: AsyncClient, dispatched) -> None:
    resp = await client.post(CONVERSATION_URL, content=encode(CONVERSATION))

    assert resp.status_code == 401
    assert resp.json()["error_code"] == "MISSING_HEADERS"
    dispatched.assert_not_called()


@pytest.mark.anyio
async def test_stale_timestamp_rejected(client: AsyncClient, sign, dispatched) -> None:
    body = encode(CONVERSATION)

    resp = await client.post(
        CONVERSATION_URL, content=body, headers=sign(body, timestamp=int(time.time()) - 301)
    )

    assert resp.status_code == 401
    assert resp.json()["error_code"] == "TIMESTAMP_EXPIRED"


@pytest.mark.anyio
async def test_wrong_secret_rejected(client: AsyncClient, sign, dispatched, audited) -> None:
    body = encode(CONVERSATION)

    resp = await client.post(CONVERSATION_URL, content=body, headers=sign(body, secret="other"))

    assert resp.status_code == 403
    body = resp.json()
    assert body["success"] is False
    assert body["error_code"] == "INVALID_SIGNATURE"
    dispatched.assert_not_called()
    assert audited() == ["api_access"]


@pytest.mark.anyio
async def test_tampered_body_rejected(client: AsyncClient, sign, dispatched) -> None:
    headers = sign(encode(CONVERSATION))
    tampered = encode({**CONVERSATION, "id": 43})

    resp = await client.post(CONVERSATION_URL, content=tampered, headers=headers)

    assert resp.status_code == 403


@pytest.mark.anyio
async def test_oversized_webhook_rejected(client: AsyncClient, sign, dispatched) -> None:
    body = encode({**CONVERSATION, "padding": "x" * 1_100_000})

    resp = await client.post(CONVERSATION_URL, content=body, headers=sign(body))

    assert resp.status_code == 413
    assert resp.json()["error_code"] == "PAYLOAD_TOO_LARGE"


@pytest.mark.anyio
async def test_test_endpoint_echoes_signed_payload(client: AsyncClient, sign) -> None:
    body = encode({"hello": "world"})

    resp = await client.post("/v1/webhooks/chatwoot/test", content=body, headers=sign(body))

    assert resp.status_code == 200
    assert resp.json()["payload"] == {"hello": "world"}
    assert resp.headers["x-content-type-options"] == "nosniff"
    assert resp.headers["x-api-version"] == "v1"


# ── Intake ────────────────────────────────────────────────────────────────────


@pytest.mark.anyio
async def test_redelivery_is_acknowledged_not_requeued(client: AsyncClient, sign, dispatched) -> None:
    body = encode(CONVERSATION)
    first = await client.post(CONVERSATION_URL, content=body, headers=sign(body))
    second = await client.post(CONVERSATION_URL, content=body, headers=sign(body))

    assert first.json()["processing_status"] == "queued"
    assert second.status_code == 202
    assert second.json()["processing_status"] == "already_processed"
    assert dispatched.call_count == 1


@pytest.mark.anyio
async def test_dispatch_failure_releases_the_marker(client: AsyncClient, sign, dispatched, state) -> None:
    dispatched.side_effect = [ConnectionError("broker down"), None]
    body = encode(CONVERSATION)

    failed = await client.post(CONVERSATION_URL, content=body, headers=sign(body))
    retried = await client.post(CONVERSATION_URL, content=body, headers=sign(body))

    assert failed.status_code == 500
    assert failed.json()["error_code"] == "WEBHOOK_PROCESSING_ERROR"
    assert retried.json()["processing_status"] == "queued"


@pytest.mark.anyio
async def test_invalid_message_payload_is_422(client: AsyncClient, sign, dispatched) -> None:
    body = encode({"id": 555, "conversation_id": 42, "message_type": "email", "sender": {"name": "Ana"}})

    resp = await client.post(MESSAGE_URL, content=body, headers=sign(body))

    assert resp.status_code == 422
    dispatched.assert_not_called()


@pytest.mark.anyio
async def test_status_changes_get_distinct_ids(client: AsyncClient, sign, dispatched) -> None:
    ids = []
    for status in ("resolved", "open"):
        body = encode({"id": 42, "status": status, "changed_at": "2024-01-01T10:00:00Z"})
        resp = await client.post(STATUS_URL, content=body, headers=sign(body))
        ids.append(resp.json()["webhook_id"])

    assert ids[0] != ids[1]
    assert ids[0].startswith("conversation_status_changed:42:resolved:")
    assert dispatched.call_count == 2


@pytest.mark.anyio
async def test_status_cycle_is_not_mistaken_for_a_redelivery(
    client: AsyncClient, sign, dispatched
) -> None:
    statuses = []
    for status, changed_at in (
        ("resolved", "2024-01-01T10:00:00Z"),
        ("open", "2024-01-01T11:00:00Z"),
        ("resolved", "2024-01-01T12:00:00Z"),
    ):
        body = encode({"id": 42, "status": status, "changed_at": changed_at})
        resp = await client.post(STATUS_URL, content=body, headers=sign(body))
        statuses.append(resp.json()["processing_status"])

    assert statuses == ["queued", "queued", "queued"]
    assert dispatched.call_count == 3


@pytest.mark.anyio
async def test_status_change_without_timestamp_is_422(client: AsyncClient, sign, dispatched) -> None:
    body = encode({"id": 42, "status": "resolved"})

    resp = await client.post(STATUS_URL, content=body, headers=sign(body))

    assert resp.status_code == 422
    dispatched.assert_not_called()


# ── Status ────────────────────────────────────────────────────────────────────


@pytest.mark.anyio
async def test_status_lifecycle(client: AsyncClient, sign, dispatched, db) -> None:
    webhook_id = "message_created:555"
    resp = await client.get(f"/v1/webhooks/chatwoot/status/{webhook_id}")
    assert resp.json()["status"] == "pending"

    body = encode({"id": 555, "conversation_id": 42, "message_type": "incoming", "sender": {"name": "Ana"}})
    await client.post(MESSAGE_URL, content=body, headers=sign(body))
    resp = await client.get(f"/v1/webhooks/chatwoot/status/{webhook_id}")
    assert resp.json()["status"] == "queued"

    mark_webhook_completed(webhook_id)
    resp = await client.get(f"/v1/webhooks/chatwoot/status/{webhook_id}")
    assert resp.json()["status"] == "processed"

    db.add(
        FailedWebhook(
            webhook_id=webhook_id,
            event_type="message_created",
            payload={"id": 555},
            error="Conversation mapping not found",
            attempts=1,
        )
    )
    db.commit()
    resp = await client.get(f"/v1/webhooks/chatwoot/status/{webhook_id}")
    data = resp.json()
    assert data["status"] == "failed"
    assert data["error"] == "Conversation mapping not found"
    assert data["attempts"] == 1
