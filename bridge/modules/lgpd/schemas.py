"""Pydantic schemas for LGPD erasure and export endpoints."""

from __future__ import annotations

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field, PositiveInt

from bridge.modules.lgpd.service import ExportOptions


class DataDeletionRequest(BaseModel):
    confirmation: Literal["DELETE_ALL_DATA"]
    reason: str = Field(min_length=10, max_length=500)


class DataExportRequest(BaseModel):
    format: Literal["json", "csv"] = "json"
    include_audit_logs: bool = True
    include_consent_records: bool = True

    def options(self) -> ExportOptions:
        return ExportOptions(
            include_audit_logs=self.include_audit_logs,
            include_consent_records=self.include_consent_records,
        )


class BulkExportRequest(BaseModel):
    contact_ids: list[PositiveInt] = Field(min_length=1, max_length=100)
    format: Literal["json", "csv"] = "json"
    include_audit_logs: bool = True
    include_consent_records: bool = True
    include_conversations: bool = True
    include_messages: bool = True

    def options(self) -> ExportOptions:
        return ExportOptions(
            include_conversations=self.include_conversations,
            include_messages=self.include_messages,
            include_consent_records=self.include_consent_records,
            include_audit_logs=self.include_audit_logs,
        )


class ScheduledResponse(BaseModel):
    success: bool = True
    contact_id: int | None = None
    export_id: str | None = None
    status: str
    message: str
    timestamp: datetime


class ExportStatusResponse(BaseModel):
    export_id: str
    status: str
    progress: int = 0
    download_url: str | None = None
    expires_at: datetime | None = None
    created_at: datetime | None = None
    completed_at: datetime | None = None
    error: str | None = None


class ExportHistoryEntry(BaseModel):
    export_id: str
    status: str
    format: str
    contact_count: int
    progress: int = 0
    created_at: datetime | None = None
    completed_at: datetime | None = None
