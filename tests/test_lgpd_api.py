"""Tests for the LGPD operator endpoints."""

import time
from unittest.mock import patch

import pytest
from httpx import AsyncClient

from bridge.core.security import export_download_token
from bridge.modules.lgpd.service import ExportTracker, storage_dir


@pytest.fixture
def queued():
    """Capture scheduled LGPD jobs instead of sending them to the broker."""
    with (
        patch("bridge.modules.lgpd.tasks.process_data_deletion.apply_async") as deletion,
        patch("bridge.modules.lgpd.tasks.process_data_export.apply_async") as export,
        patch("bridge.modules.lgpd.tasks.process_bulk_data_export.apply_async") as bulk,
    ):
        yield {"deletion": deletion, "export": export, "bulk": bulk}


# ── Consent ───────────────────────────────────────────────────────────────────


@pytest.mark.anyio
async def test_record_and_query_consent(operator_client: AsyncClient, audited) -> None:
    resp = await operator_client.post(
        "/v1/lgpd/consent",
        json={"contact_id": 7, "consent_type": "data_processing", "consent_granted": True},
    )

    assert resp.status_code == 201
    assert resp.json()["status"] == "granted"

    resp = await operator_client.get("/v1/lgpd/consent/7")
    data = resp.json()
    assert data["valid"]["data_processing"] is True
    assert data["valid"]["marketing"] is False
    assert data["consents"][0]["consent_type"] == "data_processing"
    assert "consent_granted" in audited()


@pytest.mark.anyio
async def test_refusal_is_recorded_as_denied(operator_client: AsyncClient) -> None:
    await operator_client.post(
        "/v1/lgpd/consent",
        json={"contact_id": 7, "consent_type": "marketing", "consent_granted": True},
    )
    resp = await operator_client.post(
        "/v1/lgpd/consent",
        json={"contact_id": 7, "consent_type": "marketing", "consent_granted": False},
    )

    assert resp.json()["status"] == "denied"
    statuses = [c["status"] for c in (await operator_client.get("/v1/lgpd/consent/7")).json()["consents"]]
    assert sorted(statuses) == ["denied", "withdrawn"]


@pytest.mark.anyio
async def test_duplicate_grant_is_conflict(operator_client: AsyncClient) -> None:
    body = {"contact_id": 7, "consent_type": "analytics", "consent_granted": True}
    await operator_client.post("/v1/lgpd/consent", json=body)

    resp = await operator_client.post("/v1/lgpd/consent", json=body)

    assert resp.status_code == 409
    assert resp.json()["error_code"] == "CONSENT_ALREADY_EXISTS"


@pytest.mark.anyio
async def test_withdraw_consent(operator_client: AsyncClient) -> None:
    await operator_client.post(
        "/v1/lgpd/consent",
        json={"contact_id": 7, "consent_type": "marketing", "consent_granted": True},
    )

    resp = await operator_client.request(
        "DELETE", "/v1/lgpd/consent/7/marketing", json={"reason": "opt-out link"}
    )

    assert resp.status_code == 200
    assert resp.json()["status"] == "withdrawn"
    assert resp.json()["withdrawal_reason"] == "opt-out link"
    assert resp.json()["is_valid"] is False


@pytest.mark.anyio
async def test_withdraw_unknown_type_is_422(operator_client: AsyncClient) -> None:
    resp = await operator_client.delete("/v1/lgpd/consent/7/telemarketing")

    assert resp.status_code == 422
    assert resp.json()["error_code"] == "CONSENT_INVALID_TYPE"


@pytest.mark.anyio
async def test_consent_stats(operator_client: AsyncClient) -> None:
    await operator_client.post(
        "/v1/lgpd/consent",
        json={"contact_id": 7, "consent_type": "marketing", "consent_granted": True},
    )

    resp = await operator_client.get("/v1/lgpd/consent/stats")

    assert resp.json()["stats"]["marketing"]["granted"] == 1


# ── Erasure and exports ───────────────────────────────────────────────────────


@pytest.mark.anyio
async def test_deletion_requires_confirmation(operator_client: AsyncClient, queued) -> None:
    resp = await operator_client.request(
        "DELETE", "/v1/lgpd/data/7", json={"confirmation": "yes", "reason": "subject asked for erasure"}
    )

    assert resp.status_code == 422
    queued["deletion"].assert_not_called()


@pytest.mark.anyio
async def test_deletion_is_scheduled(operator_client: AsyncClient, queued, audited) -> None:
    resp = await operator_client.request(
        "DELETE",
        "/v1/lgpd/data/7",
        json={"confirmation": "DELETE_ALL_DATA", "reason": "subject asked for erasure"},
    )

    assert resp.status_code == 202
    assert resp.json()["status"] == "deletion_scheduled"
    kwargs = queued["deletion"].call_args.kwargs
    assert kwargs["args"][:3] == [7, "subject asked for erasure", "operator-1"]
    assert kwargs["queue"] == "lgpd-normal"
    assert "data_deletion_requested" in audited()


@pytest.mark.anyio
async def test_export_is_scheduled_and_tracked(operator_client: AsyncClient, queued) -> None:
    resp = await operator_client.post("/v1/lgpd/export/7", json={"format": "csv"})

    assert resp.status_code == 202
    export_id = resp.json()["export_id"]
    args = queued["export"].call_args.kwargs["args"]
    assert args[:3] == [export_id, 7, "csv"]

    status_resp = await operator_client.get(f"/v1/export/status/{export_id}")
    assert status_resp.json()["status"] == "scheduled"
    history = (await operator_client.get("/v1/export/history")).json()
    assert [h["export_id"] for h in history] == [export_id]


@pytest.mark.anyio
async def test_bulk_export_limits(operator_client: AsyncClient, queued) -> None:
    too_many = await operator_client.post("/v1/export/bulk", json={"contact_ids": list(range(1, 102))})
    ok = await operator_client.post("/v1/export/bulk", json={"contact_ids": [7, 8], "format": "json"})

    assert too_many.status_code == 422
    assert ok.status_code == 202
    assert queued["bulk"].call_args.kwargs["queue"] == "exports-bulk"


@pytest.mark.anyio
async def test_cancel_export(operator_client: AsyncClient, queued) -> None:
    export_id = (await operator_client.post("/v1/lgpd/export/7")).json()["export_id"]

    resp = await operator_client.delete(f"/v1/export/{export_id}")
    again = await operator_client.delete(f"/v1/export/{export_id}")

    assert resp.json()["status"] == "cancelled"
    assert again.status_code == 400
    assert again.json()["error_code"] == "EXPORT_CANCELLATION_FAILED"


@pytest.mark.anyio
async def test_unknown_export_status_is_404(operator_client: AsyncClient) -> None:
    resp = await operator_client.get("/v1/export/status/export_missing")

    assert resp.status_code == 404


# ── Download ──────────────────────────────────────────────────────────────────


@pytest.mark.anyio
async def test_signed_download(client: AsyncClient, audited) -> None:
    filename = "data-export-7-2024-01-01-00-00-00.json"
    storage_dir().mkdir(parents=True, exist_ok=True)
    (storage_dir() / filename).write_text('{"contact_id": 7}')
    ts = int(time.time())

    ok = await client.get(
        f"/v1/export/download/{filename}",
        params={"token": export_download_token(filename, ts), "ts": ts},
    )
    forged = await client.get(f"/v1/export/download/{filename}", params={"token": "bad", "ts": ts})

    assert ok.status_code == 200
    assert ok.json() == {"contact_id": 7}
    assert ok.headers["content-type"].startswith("application/json")
    assert forged.status_code == 403
    assert forged.json()["error_code"] == "INVALID_DOWNLOAD_TOKEN"
    assert "data_export_downloaded" in audited()


@pytest.mark.anyio
async def test_completed_export_link_downloads(client: AsyncClient) -> None:
    tracker = ExportTracker()
    filename = "data-export-8-2024-01-01-00-00-00.csv"
    storage_dir().mkdir(parents=True, exist_ok=True)
    (storage_dir() / filename).write_text("# contact\r\n")
    tracker.create("export_c", contact_ids=[8], fmt="csv", created_by="operator-1", bulk=False)

    url = tracker.complete("export_c", filename)["download_url"]
    resp = await client.get(url.replace("http://testserver", ""))

    assert resp.status_code == 200
    assert resp.text == "# contact\r\n"
