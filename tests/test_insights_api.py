"""Tests for the operator insights endpoints."""

from unittest.mock import patch

import httpx
import pytest
from httpx import AsyncClient

from bridge.modules.insights.client import InsightsClient

URL = "/v1/ai/insights/9"


@pytest.fixture
def insights_clients(client_factory):
    built: list[InsightsClient] = []

    def build() -> InsightsClient:
        built.append(client_factory(InsightsClient))
        return built[-1]

    with patch("bridge.modules.insights.router.get_insights_client", side_effect=build):
        yield built


@pytest.mark.anyio
async def test_insights_require_a_token(client: AsyncClient, insights_clients) -> None:
    resp = await client.get(URL)

    assert resp.status_code in (401, 403)
    assert insights_clients == []


@pytest.mark.anyio
async def test_insights_are_cached_between_requests(
    operator_client: AsyncClient, insights_clients, upstream, audited
) -> None:
    upstream.queue(httpx.Response(200, json={"data": {"score": 0.8}}))

    first = await operator_client.get(URL)
    second = await operator_client.get(URL)

    assert first.status_code == 200
    assert first.json()["insights"] == {"data": {"score": 0.8}}
    assert second.json()["insights"] == {"data": {"score": 0.8}}
    assert len(upstream.requests) == 1
    assert all(c._http.is_closed for c in insights_clients)
    assert audited() == ["api_access", "api_access"]


@pytest.mark.anyio
async def test_refresh_bypasses_and_drops_the_cache(
    operator_client: AsyncClient, insights_clients, upstream
) -> None:
    upstream.queue(
        httpx.Response(200, json={"data": {"score": 0.1}}),
        httpx.Response(200, json={"data": {"score": 0.9}}),
        httpx.Response(200, json={"data": {"score": 0.9}}),
    )
    await operator_client.get(URL)

    resp = await operator_client.post(f"{URL}/refresh")
    after = await operator_client.get(URL)

    assert resp.json()["insights"] == {"data": {"score": 0.9}}
    assert upstream.requests[1].url.params["_bypass_cache"] == "1"
    assert after.json()["insights"] == {"data": {"score": 0.9}}
    assert len(upstream.requests) == 3


@pytest.mark.anyio
async def test_upstream_outage_renders_the_error_envelope(
    operator_client: AsyncClient, insights_clients, upstream
) -> None:
    upstream.queue(*[httpx.Response(503, json={"message": "down"}) for _ in range(3)])

    resp = await operator_client.get(URL)

    assert resp.status_code == 503
    body = resp.json()
    assert body["success"] is False
    assert body["error_code"] == "SERVICE_UNAVAILABLE"
