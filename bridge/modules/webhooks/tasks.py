"""Celery tasks that apply Chatwoot webhook events to Krayin.

One task per event kind. Each attempt runs the handler in its own session;
retryable failures back off per ``WEBHOOK_POLICY_*`` and exhausted or terminal
failures land in ``failed_webhooks``.
"""

from __future__ import annotations

from collections.abc import Callable
from typing import Any

import structlog
from celery import Task, shared_task
from sqlalchemy.orm import Session

from bridge.core.jobs import (
    WEBHOOK_POLICY_HIGH,
    WEBHOOK_POLICY_NORMAL,
    JobPolicy,
    current_attempt,
    run_with_policy,
)
from bridge.models.enums import WebhookEvent
from bridge.modules.krayin.client import KrayinClient
from bridge.modules.webhooks.handlers import (
    HandlerResult,
    WebhookContext,
    handle_conversation_created,
    handle_conversation_status_changed,
    handle_message_created,
)

logger = structlog.get_logger()

Handler = Callable[[Session, KrayinClient, dict[str, Any], WebhookContext], HandlerResult]


def _execute(
    task: Task,
    policy: JobPolicy,
    handler: Handler,
    event: WebhookEvent,
    webhook_id: str,
    payload: dict[str, Any],
    ip_address: str | None,
    user_agent: str | None,
) -> dict[str, Any]:
    from bridge.core.database import get_db_session
    from bridge.modules.audit.service import AuditService
    from bridge.modules.krayin.client import get_krayin_client
    from bridge.modules.webhooks.service import mark_webhook_completed

    ctx = WebhookContext(
        webhook_id=webhook_id,
        ip_address=ip_address,
        user_agent=user_agent,
        attempt=current_attempt(task),
    )

    def _work() -> HandlerResult:
        with get_db_session() as session, get_krayin_client() as krayin:
            return handler(session, krayin, payload, ctx)

    def _dead_letter(exc: BaseException, attempts: int) -> None:
        from bridge.modules.webhooks.service import record_failed_webhook

        with get_db_session() as session:
            record_failed_webhook(
                session,
                webhook_id=webhook_id,
                event_type=event.value,
                payload=payload,
                error=str(exc),
                attempts=attempts,
                ip_address=ip_address,
                user_agent=user_agent,
            )

    result = run_with_policy(
        task,
        policy,
        _work,
        _dead_letter,
        webhook_id=webhook_id,
        event=event.value,
    )

    if result.status != "dead_lettered":
        mark_webhook_completed(webhook_id)
    if result.audit is not None:
        AuditService(ip_address=ip_address, user_agent=user_agent).log_security_event(
            "webhook_processed", result.audit
        )
    return {"status": result.status, "webhook_id": webhook_id, **result.details}


@shared_task(
    name="tasks.process_conversation_created",
    bind=True,
    max_retries=WEBHOOK_POLICY_HIGH.max_retries,
)
def process_conversation_created(  # type: ignore[misc]
    self,
    webhook_id: str,
    payload: dict[str, Any],
    ip_address: str | None = None,
    user_agent: str | None = None,
) -> dict:
    """Create the Krayin lead and both mappings for a new conversation."""
    return _execute(
        self,
        WEBHOOK_POLICY_HIGH,
        handle_conversation_created,
        WebhookEvent.CONVERSATION_CREATED,
        webhook_id,
        payload,
        ip_address,
        user_agent,
    )


@shared_task(
    name="tasks.process_message_created",
    bind=True,
    max_retries=WEBHOOK_POLICY_NORMAL.max_retries,
)
def process_message_created(  # type: ignore[misc]
    self,
    webhook_id: str,
    payload: dict[str, Any],
    ip_address: str | None = None,
    user_agent: str | None = None,
) -> dict:
    """Record a message as a Krayin activity on the conversation's lead."""
    return _execute(
        self,
        WEBHOOK_POLICY_NORMAL,
        handle_message_created,
        WebhookEvent.MESSAGE_CREATED,
        webhook_id,
        payload,
        ip_address,
        user_agent,
    )


@shared_task(
    name="tasks.process_conversation_status_changed",
    bind=True,
    max_retries=WEBHOOK_POLICY_HIGH.max_retries,
)
def process_conversation_status_changed(  # type: ignore[misc]
    self,
    webhook_id: str,
    payload: dict[str, Any],
    ip_address: str | None = None,
    user_agent: str | None = None,
) -> dict:
    """Move the lead to the pipeline stage matching the new conversation status."""
    return _execute(
        self,
        WEBHOOK_POLICY_HIGH,
        handle_conversation_status_changed,
        WebhookEvent.CONVERSATION_STATUS_CHANGED,
        webhook_id,
        payload,
        ip_address,
        user_agent,
    )
