"""AI insights API client (read-only, per lead)."""

from __future__ import annotations

from typing import Any

from bridge.core.config import settings
from bridge.services.api_client import ResilientApiClient, params_digest

CURRENT_TTL = 3600
HISTORICAL_TTL = 7200


def insights_namespace(lead_id: int) -> str:
    return f"insights:lead:{lead_id}"


class InsightsClient(ResilientApiClient):
    upstream = "insights"
    health_path = "/health"

    def get_insights(
        self,
        lead_id: int,
        include_history: bool = False,
        params: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        query = dict(params or {})
        if include_history:
            query["include_history"] = True
        kind = "historical" if include_history else "current"
        return self.cache.remember(
            insights_namespace(lead_id),
            HISTORICAL_TTL if include_history else CURRENT_TTL,
            lambda: self.request(
                "GET",
                f"/api/v1/ai/insights/{lead_id}",
                operation=f"get_{kind}_insights",
                params=query or None,
            ),
            suffix=f"{kind}:{params_digest(query)}",
        )

    def refresh_insights(self, lead_id: int, params: dict[str, Any] | None = None) -> dict[str, Any]:
        """Ask the backend to recompute, then drop every cached read for the lead."""
        result = self.request(
            "GET",
            f"/api/v1/ai/insights/{lead_id}",
            operation="refresh_insights",
            params={**(params or {}), "_bypass_cache": 1},
        )
        self.cache.invalidate(insights_namespace(lead_id))
        return result

    def cache_ttls(self) -> dict[str, int]:
        return {"current": CURRENT_TTL, "historical": HISTORICAL_TTL}


def get_insights_client() -> InsightsClient:
    return InsightsClient(
        settings.INSIGHTS_BASE_URL,
        settings.INSIGHTS_API_TOKEN,
        timeout=settings.INSIGHTS_TIMEOUT,
        rate_limit_per_minute=settings.INSIGHTS_RATE_LIMIT_PER_MINUTE,
        debug=settings.APP_DEBUG,
    )
