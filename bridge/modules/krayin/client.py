"""Krayin CRM API client."""

from __future__ import annotations

from typing import Any

import structlog

from bridge.core.config import settings
from bridge.services.api_client import ResilientApiClient

logger = structlog.get_logger()

LEAD_TTL = 300
PIPELINES_TTL = 3600
STAGES_TTL = 86400

PIPELINES_NAMESPACE = "krayin:pipelines"


def lead_namespace(lead_id: int) -> str:
    return f"krayin:lead:{lead_id}"


class KrayinClient(ResilientApiClient):
    upstream = "krayin"
    health_path = "/health"

    def create_lead(self, data: dict[str, Any], idempotency_key: str | None = None) -> dict[str, Any]:
        return self.request(
            "POST",
            "/api/leads",
            operation="create_lead",
            json=data,
            headers=_idempotency_header(idempotency_key),
        )

    def create_activity(
        self, lead_id: int, data: dict[str, Any], idempotency_key: str | None = None
    ) -> dict[str, Any]:
        return self.request(
            "POST",
            "/api/activities",
            operation="create_activity",
            json={**data, "lead_id": lead_id},
            headers=_idempotency_header(idempotency_key),
        )

    def update_lead_stage(self, lead_id: int, stage_id: int) -> dict[str, Any]:
        result = self.request(
            "PUT",
            f"/api/leads/{lead_id}",
            operation="update_lead_stage",
            json={"lead_pipeline_stage_id": stage_id},
        )
        self.cache.invalidate(lead_namespace(lead_id))
        return result

    def get_lead(self, lead_id: int) -> dict[str, Any]:
        return self.cache.remember(
            lead_namespace(lead_id),
            LEAD_TTL,
            lambda: self.request("GET", f"/api/leads/{lead_id}", operation="get_lead"),
        )

    def get_pipelines(self) -> dict[str, Any]:
        return self.cache.remember(
            PIPELINES_NAMESPACE,
            PIPELINES_TTL,
            lambda: self.request("GET", "/api/pipelines", operation="get_pipelines"),
            suffix="all",
        )

    def get_pipeline_stages(self, pipeline_id: int) -> dict[str, Any]:
        return self.cache.remember(
            PIPELINES_NAMESPACE,
            STAGES_TTL,
            lambda: self.request(
                "GET",
                "/api/stages",
                operation="get_pipeline_stages",
                params={"pipeline_id": pipeline_id},
            ),
            suffix=f"pipeline:{pipeline_id}:stages",
        )

    def cache_ttls(self) -> dict[str, int]:
        return {"lead_ttl": LEAD_TTL, "pipeline_ttl": PIPELINES_TTL, "stages_ttl": STAGES_TTL}


class CachedKrayinClient(KrayinClient):
    """Adds stale-while-revalidate lead reads and write-side invalidation."""

    def get_lead(self, lead_id: int) -> dict[str, Any]:
        return self.cache.remember_stale_while_revalidate(
            lead_namespace(lead_id),
            LEAD_TTL,
            lambda: self.request("GET", f"/api/leads/{lead_id}", operation="get_lead"),
        )

    def create_lead(self, data: dict[str, Any], idempotency_key: str | None = None) -> dict[str, Any]:
        result = super().create_lead(data, idempotency_key)
        self.cache.invalidate(PIPELINES_NAMESPACE)
        return result

    def update_lead_stage(self, lead_id: int, stage_id: int) -> dict[str, Any]:
        result = super().update_lead_stage(lead_id, stage_id)
        self.cache.invalidate(PIPELINES_NAMESPACE)
        return result

    def create_activity(
        self, lead_id: int, data: dict[str, Any], idempotency_key: str | None = None
    ) -> dict[str, Any]:
        result = super().create_activity(lead_id, data, idempotency_key)
        self.cache.invalidate(lead_namespace(lead_id))
        return result

    def warm_cache(self) -> list[str]:
        """Preload pipelines and every pipeline's stages."""
        warmed: list[str] = []
        pipelines = self.get_pipelines()
        warmed.append("pipelines")
        for pipeline in pipelines.get("data") or []:
            self.get_pipeline_stages(pipeline["id"])
        if pipelines.get("data"):
            warmed.append("pipeline_stages")
        logger.info("krayin_cache_warmed", warmed_items=warmed)
        return warmed

    def clear_all_caches(self, lead_ids: list[int] | None = None) -> list[str]:
        namespaces = [PIPELINES_NAMESPACE] + [lead_namespace(i) for i in lead_ids or []]
        self.cache.invalidate(*namespaces)
        self.cache.reset_stats()
        return namespaces


def _idempotency_header(key: str | None) -> dict[str, str] | None:
    return {"X-Idempotency-Key": key} if key else None


def get_krayin_client() -> CachedKrayinClient:
    return CachedKrayinClient(
        settings.KRAYIN_BASE_URL,
        settings.KRAYIN_API_TOKEN,
        timeout=settings.KRAYIN_TIMEOUT,
        connect_timeout=settings.KRAYIN_CONNECT_TIMEOUT,
        retry_attempts=settings.KRAYIN_RETRY_ATTEMPTS,
        retry_delay_ms=settings.KRAYIN_RETRY_DELAY_MS,
        rate_limit_per_minute=settings.KRAYIN_RATE_LIMIT_PER_MINUTE,
        circuit_breaker_threshold=settings.KRAYIN_CIRCUIT_BREAKER_THRESHOLD,
        circuit_breaker_timeout=settings.KRAYIN_CIRCUIT_BREAKER_TIMEOUT,
        verify_ssl=settings.KRAYIN_VERIFY_SSL,
        max_redirects=settings.KRAYIN_MAX_REDIRECTS,
        debug=settings.APP_DEBUG,
    )
