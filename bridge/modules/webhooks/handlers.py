"""Webhook event handlers: Chatwoot events -> Krayin calls -> mapping rows.

Each handler runs inside the caller's session and leaves committing to the
caller, so the mapping writes of one handler land in one transaction. The
Krayin call happens before that commit. Redelivery is absorbed by the
existence checks at the top of each handler (backed by UNIQUE constraints),
and lead/activity creation additionally sends the webhook id as Krayin's
idempotency key.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, TypeVar

import structlog
from pydantic import BaseModel, ValidationError
from sqlalchemy import select, update
from sqlalchemy.orm import Session

from bridge.core.config import settings
from bridge.core.errors import DomainValidationError, UpstreamApiError
from bridge.models.base import utcnow
from bridge.models.enums import ConsentType, ConversationStatus, MessageType, WebhookEvent
from bridge.models.mappings import (
    ActivityMapping,
    ContactMapping,
    ConversationMapping,
    StageChangeLog,
)
from bridge.modules.krayin.client import KrayinClient
from bridge.modules.webhooks.schemas import (
    ConversationCreatedPayload,
    ConversationStatusChangedPayload,
    MessageCreatedPayload,
    WebhookContact,
)
from bridge.modules.webhooks.service import record_failed_webhook

logger = structlog.get_logger()

P = TypeVar("P", bound=BaseModel)

MISSING_CONVERSATION_ERROR = "Conversation mapping not found"


@dataclass(frozen=True)
class WebhookContext:
    webhook_id: str
    ip_address: str | None = None
    user_agent: str | None = None
    attempt: int = 1


@dataclass
class HandlerResult:
    """What a handler did; ``audit`` is emitted once the transaction has committed."""

    status: str
    audit: dict[str, Any] | None = None
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class Stage:
    stage_id: int
    name: str


def stage_for_status(status: ConversationStatus | str | None) -> Stage:
    """Chatwoot status -> Krayin pipeline stage. Unknown statuses map like ``open``."""
    in_progress = Stage(settings.KRAYIN_STAGE_IN_PROGRESS_ID, "In Progress")
    stages = {
        ConversationStatus.OPEN.value: in_progress,
        ConversationStatus.RESOLVED.value: Stage(settings.KRAYIN_STAGE_FOLLOW_UP_ID, "Follow-up"),
        ConversationStatus.PENDING.value: Stage(settings.KRAYIN_STAGE_WAITING_ID, "Waiting"),
        ConversationStatus.SNOOZED.value: Stage(settings.KRAYIN_STAGE_WAITING_ID, "Waiting"),
    }
    key = status.value if isinstance(status, ConversationStatus) else status
    return stages.get(key or "", in_progress)


def parse_payload(model: type[P], payload: dict[str, Any]) -> P:
    try:
        return model.model_validate(payload)
    except ValidationError as exc:
        raise DomainValidationError(
            f"Invalid {model.__name__}",
            details=exc.errors(include_url=False, include_context=False),
        ) from exc


def _created_id(response: dict[str, Any], operation: str) -> int:
    """Krayin answers ``{"data": {"id": ...}}``; anything else is a failed call."""
    data = response.get("data")
    if not isinstance(data, dict) or data.get("id") is None:
        raise UpstreamApiError(
            f"krayin API returned no id for {operation}",
            upstream="krayin",
            operation=operation,
            response_body=str(response)[:500],
        )
    return int(data["id"])


def _conversation(session: Session, chatwoot_conversation_id: int) -> ConversationMapping | None:
    return session.scalar(
        select(ConversationMapping).where(
            ConversationMapping.chatwoot_conversation_id == chatwoot_conversation_id
        )
    )


# ── Conversation created ──────────────────────────────────────────────────────


def build_lead_data(contact: WebhookContact, webhook_id: str) -> dict[str, Any]:
    return {
        "title": f"{contact.name} - Consulta via Chat",
        "person": {
            "name": contact.name,
            "emails": [contact.email] if contact.email else [],
            "contact_numbers": [contact.phone_number] if contact.phone_number else [],
        },
        "lead_pipeline_id": settings.KRAYIN_DEFAULT_PIPELINE_ID,
        "lead_pipeline_stage_id": settings.KRAYIN_DEFAULT_STAGE_ID,
        "custom_fields": {
            "source": "Chatwoot",
            "chatwoot_contact_id": contact.id,
            "chatwoot_webhook_id": webhook_id,
            "created_via_webhook": True,
        },
    }


def handle_conversation_created(
    session: Session,
    krayin: KrayinClient,
    payload: dict[str, Any],
    ctx: WebhookContext,
) -> HandlerResult:
    data = parse_payload(ConversationCreatedPayload, payload)
    contact = data.contact
    log = logger.bind(
        webhook_id=ctx.webhook_id,
        chatwoot_contact_id=contact.id,
        chatwoot_conversation_id=data.id,
        attempt=ctx.attempt,
    )
    log.info("conversation_created_processing")

    existing = session.scalar(
        select(ContactMapping).where(ContactMapping.chatwoot_contact_id == contact.id)
    )
    if existing is not None:
        if existing.krayin_lead_id is None:
            raise DomainValidationError(
                f"Contact {contact.id} is mapped to a Krayin person without a lead",
                details={"chatwoot_contact_id": contact.id},
            )
        linked = False
        if _conversation(session, data.id) is None:
            session.add(
                ConversationMapping(
                    chatwoot_conversation_id=data.id,
                    krayin_lead_id=existing.krayin_lead_id,
                    status=data.status,
                    created_at=data.created_at or utcnow(),
                )
            )
            session.flush()
            linked = True
        log.info(
            "contact_mapping_already_exists",
            krayin_lead_id=existing.krayin_lead_id,
            conversation_linked=linked,
        )
        return HandlerResult(
            "linked" if linked else "skipped",
            details={"krayin_lead_id": existing.krayin_lead_id},
        )

    if settings.WEBHOOK_REQUIRE_CONSENT:
        from bridge.modules.consent.service import ConsentService

        ConsentService(session).require_consent(contact.id, ConsentType.DATA_PROCESSING)

    lead = krayin.create_lead(
        build_lead_data(contact, ctx.webhook_id), idempotency_key=ctx.webhook_id
    )
    krayin_lead_id = _created_id(lead, "create_lead")

    contact_mapping = ContactMapping(
        chatwoot_contact_id=contact.id,
        krayin_lead_id=krayin_lead_id,
        contact_name=contact.name,
        contact_email=contact.email,
        contact_phone=contact.phone_number,
    )
    conversation_mapping = ConversationMapping(
        chatwoot_conversation_id=data.id,
        krayin_lead_id=krayin_lead_id,
        status=data.status,
        created_at=data.created_at or utcnow(),
    )
    session.add_all([contact_mapping, conversation_mapping])
    session.flush()

    log.info(
        "conversation_created_processed",
        krayin_lead_id=krayin_lead_id,
        contact_mapping_id=contact_mapping.id,
        conversation_mapping_id=conversation_mapping.id,
    )
    return HandlerResult(
        "created",
        audit={
            "webhook_type": WebhookEvent.CONVERSATION_CREATED.value,
            "webhook_id": ctx.webhook_id,
            "krayin_lead_id": krayin_lead_id,
            "chatwoot_contact_id": contact.id,
            "chatwoot_conversation_id": data.id,
            "ip": ctx.ip_address,
            "user_agent": ctx.user_agent,
        },
        details={"krayin_lead_id": krayin_lead_id},
    )


# ── Message created ───────────────────────────────────────────────────────────


def activity_title(message_type: MessageType, sender_name: str) -> str:
    if message_type is MessageType.INCOMING:
        return f"Mensagem recebida de {sender_name}"
    if message_type is MessageType.OUTGOING:
        return f"Mensagem enviada para {sender_name}"
    return f"Atividade: {sender_name}"


def activity_type(message_type: MessageType) -> str:
    if message_type is MessageType.INCOMING:
        return "call"
    if message_type is MessageType.OUTGOING:
        return "email"
    return "note"


def build_activity_data(message: MessageCreatedPayload) -> dict[str, Any]:
    sender = message.sender
    description = (
        f"Tipo: {message.message_type.value}\n"
        f"Remetente: {sender.name} ({sender.type})\n"
        f"Conteúdo: {message.content_type}\n\n"
    )
    if message.content_type == "text":
        description += f"Mensagem: {message.content or ''}"
    else:
        description += "Arquivo anexado"
    return {
        "title": activity_title(message.message_type, sender.name),
        "description": description,
        "type": activity_type(message.message_type),
        "date": message.created_at.isoformat() if message.created_at else None,
        "custom_fields": {
            "chatwoot_message_id": message.id,
            "chatwoot_conversation_id": message.conversation_id,
            "sender_name": sender.name,
            "sender_type": sender.type,
            "message_type": message.message_type.value,
            "content_type": message.content_type,
            "is_private": message.private,
        },
    }


def handle_message_created(
    session: Session,
    krayin: KrayinClient,
    payload: dict[str, Any],
    ctx: WebhookContext,
) -> HandlerResult:
    message = parse_payload(MessageCreatedPayload, payload)
    log = logger.bind(
        webhook_id=ctx.webhook_id,
        chatwoot_message_id=message.id,
        chatwoot_conversation_id=message.conversation_id,
        attempt=ctx.attempt,
    )
    log.info("message_created_processing")

    conversation = _conversation(session, message.conversation_id)
    if conversation is None:
        # Out-of-order delivery: retrying cannot help until conversation_created lands
        log.warning("conversation_mapping_not_found")
        record_failed_webhook(
            session,
            webhook_id=ctx.webhook_id,
            event_type=WebhookEvent.MESSAGE_CREATED.value,
            payload=payload,
            error=MISSING_CONVERSATION_ERROR,
            attempts=ctx.attempt,
            ip_address=ctx.ip_address,
            user_agent=ctx.user_agent,
        )
        return HandlerResult("dead_lettered", details={"error": MISSING_CONVERSATION_ERROR})

    already = session.scalar(
        select(ActivityMapping.krayin_activity_id).where(
            ActivityMapping.chatwoot_message_id == message.id
        )
    )
    if already is not None:
        log.info("activity_mapping_already_exists", krayin_activity_id=already)
        return HandlerResult("skipped", details={"krayin_activity_id": already})

    activity = krayin.create_activity(
        conversation.krayin_lead_id,
        build_activity_data(message),
        idempotency_key=ctx.webhook_id,
    )
    krayin_activity_id = _created_id(activity, "create_activity")

    occurred_at = message.created_at or utcnow()
    mapping = ActivityMapping(
        chatwoot_message_id=message.id,
        krayin_activity_id=krayin_activity_id,
        conversation_id=message.conversation_id,
        krayin_lead_id=conversation.krayin_lead_id,
        message_type=message.message_type,
        content_type=message.content_type,
        content=message.content,
        sender_name=message.sender.name,
        sender_type=message.sender.type,
        created_at=occurred_at,
    )
    session.add(mapping)
    # Counter bump in SQL so concurrent messages on one conversation don't lose updates
    session.execute(
        update(ConversationMapping)
        .where(ConversationMapping.id == conversation.id)
        .values(
            message_count=ConversationMapping.message_count + 1,
            last_message_at=occurred_at,
            last_activity_at=occurred_at,
        )
        .execution_options(synchronize_session=False)
    )
    if message.message_type is MessageType.OUTGOING and conversation.first_response_at is None:
        conversation.set_first_response(occurred_at)
    session.flush()

    log.info(
        "message_created_processed",
        krayin_lead_id=conversation.krayin_lead_id,
        krayin_activity_id=krayin_activity_id,
        activity_mapping_id=mapping.id,
    )
    return HandlerResult(
        "created",
        audit={
            "webhook_type": WebhookEvent.MESSAGE_CREATED.value,
            "webhook_id": ctx.webhook_id,
            "krayin_lead_id": conversation.krayin_lead_id,
            "krayin_activity_id": krayin_activity_id,
            "chatwoot_message_id": message.id,
            "ip": ctx.ip_address,
            "user_agent": ctx.user_agent,
        },
        details={"krayin_activity_id": krayin_activity_id},
    )


# ── Conversation status changed ───────────────────────────────────────────────


def handle_conversation_status_changed(
    session: Session,
    krayin: KrayinClient,
    payload: dict[str, Any],
    ctx: WebhookContext,
) -> HandlerResult:
    change = parse_payload(ConversationStatusChangedPayload, payload)
    log = logger.bind(
        webhook_id=ctx.webhook_id,
        chatwoot_conversation_id=change.id,
        new_status=change.status.value,
        attempt=ctx.attempt,
    )
    log.info("conversation_status_changed_processing")

    conversation = _conversation(session, change.id)
    if conversation is None:
        log.warning("conversation_mapping_not_found")
        record_failed_webhook(
            session,
            webhook_id=ctx.webhook_id,
            event_type=WebhookEvent.CONVERSATION_STATUS_CHANGED.value,
            payload=payload,
            error=MISSING_CONVERSATION_ERROR,
            attempts=ctx.attempt,
            ip_address=ctx.ip_address,
            user_agent=ctx.user_agent,
        )
        return HandlerResult("dead_lettered", details={"error": MISSING_CONVERSATION_ERROR})

    already = session.scalar(
        select(StageChangeLog.id).where(
            StageChangeLog.webhook_id == ctx.webhook_id,
            StageChangeLog.chatwoot_conversation_id == change.id,
        )
    )
    if already is not None:
        log.info("stage_change_already_recorded", stage_change_log_id=already)
        return HandlerResult("skipped", details={"stage_change_log_id": already})

    stage = stage_for_status(change.status)
    previous_stage = stage_for_status(change.previous_status) if change.previous_status else None

    result = krayin.update_lead_stage(conversation.krayin_lead_id, stage.stage_id)
    if "data" not in result:
        raise UpstreamApiError(
            "krayin API returned no data for update_lead_stage",
            upstream="krayin",
            operation="update_lead_stage",
            response_body=str(result)[:500],
        )

    conversation.update_status(change.status)
    stage_log = StageChangeLog(
        krayin_lead_id=conversation.krayin_lead_id,
        chatwoot_conversation_id=change.id,
        previous_stage=previous_stage.name if previous_stage else None,
        new_stage=stage.name,
        previous_status=change.previous_status.value if change.previous_status else None,
        new_status=change.status.value,
        changed_at=change.changed_at,
        webhook_id=ctx.webhook_id,
        ip_address=ctx.ip_address,
        user_agent=ctx.user_agent,
    )
    session.add(stage_log)
    session.flush()

    log.info(
        "conversation_status_changed_processed",
        krayin_lead_id=conversation.krayin_lead_id,
        previous_stage=stage_log.previous_stage,
        new_stage=stage.name,
        stage_change_log_id=stage_log.id,
    )
    return HandlerResult(
        "updated",
        audit={
            "webhook_type": WebhookEvent.CONVERSATION_STATUS_CHANGED.value,
            "webhook_id": ctx.webhook_id,
            "krayin_lead_id": conversation.krayin_lead_id,
            "previous_stage": stage_log.previous_stage,
            "new_stage": stage.name,
            "previous_status": stage_log.previous_status,
            "new_status": stage_log.new_status,
            "ip": ctx.ip_address,
            "user_agent": ctx.user_agent,
        },
        details={
            "stage_change_log_id": stage_log.id,
            "resolved_at": _iso(conversation.resolved_at),
        },
    )


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None
