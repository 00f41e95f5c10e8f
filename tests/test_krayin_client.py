"""Tests for the Krayin client: request shapes and cache invalidation."""

import httpx

from bridge.modules.krayin.client import KrayinClient


def test_create_lead_sends_idempotency_key(krayin, upstream) -> None:
    upstream.queue(httpx.Response(201, json={"data": {"id": 9}}))

    result = krayin.create_lead({"title": "Lead from Chatwoot"}, idempotency_key="conversation_created_42")

    request = upstream.requests[0]
    assert result == {"data": {"id": 9}}
    assert request.method == "POST"
    assert request.url.path == "/api/leads"
    assert request.headers["X-Idempotency-Key"] == "conversation_created_42"


def test_create_activity_merges_lead_id(krayin, upstream) -> None:
    krayin.create_activity(9, {"type": "note", "comment": "Olá"})

    assert upstream.requests[0].url.path == "/api/activities"
    assert upstream.json_body() == {"type": "note", "comment": "Olá", "lead_id": 9}
    assert "X-Idempotency-Key" not in upstream.requests[0].headers


def test_update_lead_stage_puts_stage_id(krayin, upstream) -> None:
    krayin.update_lead_stage(9, 3)

    request = upstream.requests[0]
    assert request.method == "PUT"
    assert request.url.path == "/api/leads/9"
    assert upstream.json_body() == {"lead_pipeline_stage_id": 3}


def test_get_lead_is_cached(krayin, upstream) -> None:
    upstream.queue(httpx.Response(200, json={"data": {"id": 9, "title": "A"}}))

    first = krayin.get_lead(9)
    second = krayin.get_lead(9)

    assert first == second == {"data": {"id": 9, "title": "A"}}
    assert len(upstream.requests) == 1


def test_activity_invalidates_the_lead(krayin, upstream) -> None:
    upstream.queue(
        httpx.Response(200, json={"data": {"id": 9, "title": "A"}}),
        httpx.Response(201, json={"data": {"id": 100}}),
        httpx.Response(200, json={"data": {"id": 9, "title": "B"}}),
    )
    krayin.get_lead(9)
    krayin.create_activity(9, {"type": "note", "comment": "x"})

    assert krayin.get_lead(9) == {"data": {"id": 9, "title": "B"}}
    assert len(upstream.requests) == 3


def test_stage_change_invalidates_lead_and_pipelines(krayin, upstream) -> None:
    krayin.get_lead(9)
    krayin.get_pipelines()
    krayin.update_lead_stage(9, 2)
    krayin.get_lead(9)
    krayin.get_pipelines()

    paths = [r.url.path for r in upstream.requests]
    assert paths == [
        "/api/leads/9",
        "/api/pipelines",
        "/api/leads/9",
        "/api/leads/9",
        "/api/pipelines",
    ]


def test_pipeline_stages_are_cached_per_pipeline(krayin, upstream) -> None:
    krayin.get_pipeline_stages(1)
    krayin.get_pipeline_stages(1)
    krayin.get_pipeline_stages(2)

    assert [r.url.params["pipeline_id"] for r in upstream.requests] == ["1", "2"]


def test_warm_cache_loads_every_pipeline(krayin, upstream) -> None:
    upstream.queue(httpx.Response(200, json={"data": [{"id": 1}, {"id": 2}]}))

    warmed = krayin.warm_cache()

    assert warmed == ["pipelines", "pipeline_stages"]
    assert [r.url.path for r in upstream.requests] == ["/api/pipelines", "/api/stages", "/api/stages"]


def test_clear_all_caches_resets_stats(krayin, upstream) -> None:
    krayin.get_lead(9)
    krayin.get_lead(9)

    cleared = krayin.clear_all_caches([9])

    assert cleared == ["krayin:pipelines", "krayin:lead:9"]
    assert krayin.cache.stats()["total_requests"] == 0
    krayin.get_lead(9)
    assert len(upstream.requests) == 2


def test_plain_client_uses_simple_read_through(client_factory, upstream) -> None:
    client = client_factory(KrayinClient)
    client.get_lead(9)
    client.get_lead(9)

    assert len(upstream.requests) == 1
    assert client.cache.get("krayin:lead:9", "stale") is None
