"""Pydantic schemas for LGPD consent endpoints."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

from bridge.models.enums import ConsentType


class ConsentRequest(BaseModel):
    contact_id: int = Field(ge=1)
    consent_type: ConsentType
    consent_granted: bool
    # Where the data subject gave the answer; defaults to the caller's address
    ip_address: str | None = Field(default=None, max_length=45)
    user_agent: str | None = Field(default=None, max_length=500)


class ConsentRecordResponse(BaseModel):
    id: int
    contact_id: int
    consent_type: str
    status: str
    granted_at: datetime | None = None
    withdrawn_at: datetime | None = None
    expired_at: datetime | None = None
    withdrawal_reason: str | None = None
    consent_version: str | None = None
    expires_at: datetime | None = None
    is_valid: bool
    created_at: datetime


class ConsentRecordedResponse(BaseModel):
    success: bool = True
    consent_id: int
    contact_id: int
    consent_type: str
    status: str
    granted_at: datetime | None = None
    consent_version: str | None = None
    timestamp: datetime


class ContactConsentsResponse(BaseModel):
    success: bool = True
    contact_id: int
    consents: list[ConsentRecordResponse]
    valid: dict[str, bool]
    timestamp: datetime


class WithdrawConsentRequest(BaseModel):
    reason: str | None = Field(default=None, max_length=500)


class ConsentStatsResponse(BaseModel):
    stats: dict[str, dict[str, Any]]
