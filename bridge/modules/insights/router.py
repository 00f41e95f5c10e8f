"""AI insights API: cached per-lead insights and on-demand recalculation."""

from __future__ import annotations

import structlog
from fastapi import APIRouter, Depends, Query

from bridge.core.security import verify_token
from bridge.models.base import utcnow
from bridge.modules.insights.client import get_insights_client

logger = structlog.get_logger()

router = APIRouter(prefix="/ai/insights", tags=["AI Insights"])


@router.get("/{lead_id}")
def get_lead_insights(
    lead_id: int,
    include_history: bool = Query(False),
    current_user: dict = Depends(verify_token),
) -> dict:
    with get_insights_client() as client:
        insights = client.get_insights(lead_id, include_history=include_history)
    return {
        "success": True,
        "lead_id": lead_id,
        "include_history": include_history,
        "insights": insights,
        "timestamp": utcnow().isoformat(),
    }


@router.post("/{lead_id}/refresh")
def refresh_lead_insights(
    lead_id: int,
    current_user: dict = Depends(verify_token),
) -> dict:
    """Recompute a lead's insights upstream and drop the cached copies."""
    with get_insights_client() as client:
        insights = client.refresh_insights(lead_id)
    logger.info("insights_refreshed", lead_id=lead_id, user_id=current_user["user_id"])
    return {
        "success": True,
        "lead_id": lead_id,
        "insights": insights,
        "timestamp": utcnow().isoformat(),
    }
