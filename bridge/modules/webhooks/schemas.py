"""Pydantic schemas for Chatwoot webhook intake and dead-letter operations."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field

from bridge.models.enums import ConversationStatus, MessageType


# ── Inbound payloads ──────────────────────────────────────────────────────────


class WebhookContact(BaseModel):
    id: int = Field(ge=1)
    name: str = Field(min_length=1, max_length=255)
    email: str | None = Field(default=None, max_length=255)
    phone_number: str | None = Field(default=None, max_length=50)

    model_config = {"extra": "allow"}


class WebhookSender(BaseModel):
    id: int | None = None
    name: str = Field(min_length=1, max_length=255)
    type: Literal["contact", "agent", "bot", "user"] = "contact"

    model_config = {"extra": "allow"}


class ConversationCreatedPayload(BaseModel):
    event: Literal["conversation_created"] | None = None
    id: int = Field(ge=1)
    account_id: int | None = None
    contact: WebhookContact
    status: ConversationStatus = ConversationStatus.OPEN
    created_at: datetime | None = None

    model_config = {"extra": "allow"}


class MessageCreatedPayload(BaseModel):
    event: Literal["message_created"] | None = None
    id: int = Field(ge=1)
    conversation_id: int = Field(ge=1)
    account_id: int | None = None
    content: str | None = Field(default=None, max_length=10000)
    message_type: MessageType
    content_type: str = "text"
    sender: WebhookSender
    created_at: datetime | None = None
    private: bool = False

    model_config = {"extra": "allow"}


class ConversationStatusChangedPayload(BaseModel):
    event: Literal["conversation_status_changed"] | None = None
    id: int = Field(ge=1)
    account_id: int | None = None
    status: ConversationStatus
    previous_status: ConversationStatus | None = None
    changed_at: datetime

    model_config = {"extra": "allow"}


# ── Responses ─────────────────────────────────────────────────────────────────


class WebhookAcceptedResponse(BaseModel):
    success: bool = True
    webhook_id: str
    queued_at: datetime
    processing_status: Literal["queued", "already_processed"] = "queued"


class WebhookStatusResponse(BaseModel):
    webhook_id: str
    status: Literal["processed", "queued", "failed", "pending"]
    failed_at: datetime | None = None
    error: str | None = None
    attempts: int | None = None


class FailedWebhookResponse(BaseModel):
    id: int
    webhook_id: str
    event_type: str
    payload: dict[str, Any]
    error: str
    failed_at: datetime
    attempts: int
    ip_address: str | None
    user_agent: str | None
    created_at: datetime

    model_config = {"from_attributes": True}


class WebhookStatsResponse(BaseModel):
    period_days: int
    total_failed: int
    by_event_type: dict[str, int]
    since: datetime
