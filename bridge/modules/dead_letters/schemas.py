"""Pydantic schemas for the dead-letter operator API."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel


class FailedDataDeletionResponse(BaseModel):
    id: int
    contact_id: int
    reason: str | None
    requested_by: str | None
    error: str
    failed_at: datetime
    attempts: int
    created_at: datetime

    model_config = {"from_attributes": True}


class FailedDataExportResponse(BaseModel):
    id: int
    export_id: str
    contact_ids: list[int]
    format: str
    error: str
    failed_at: datetime
    attempts: int
    created_at: datetime

    model_config = {"from_attributes": True}


class FailedAuditLogResponse(BaseModel):
    id: int
    audit_data: dict[str, Any]
    error: str
    failed_at: datetime
    attempts: int
    created_at: datetime

    model_config = {"from_attributes": True}


class RetryWebhookResponse(BaseModel):
    success: bool = True
    webhook_id: str
    event_type: str
    message: str
