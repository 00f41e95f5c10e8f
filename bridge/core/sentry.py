"""Sentry bootstrap shared by the API and the worker.

Events are scrubbed before they leave the process: credential and webhook
signature headers are redacted, Chatwoot webhook bodies (contact names,
e-mails and phone numbers) are dropped, and signed export links lose their
token. Upstream failures are tagged with the upstream and operation.
"""

from __future__ import annotations

from typing import Any
from urllib.parse import parse_qsl, urlencode

import sentry_sdk
import structlog
from sentry_sdk.integrations.celery import CeleryIntegration
from sentry_sdk.integrations.fastapi import FastApiIntegration
from sentry_sdk.integrations.httpx import HttpxIntegration
from sentry_sdk.integrations.redis import RedisIntegration
from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration

from bridge.core.errors import UpstreamApiError

logger = structlog.get_logger()

REDACTED = "[REDACTED]"

REDACTED_HEADERS = frozenset(
    {
        "authorization",
        "cookie",
        "api_access_token",
        "x-chatwoot-signature",
        "x-chatwoot-timestamp",
        "x-idempotency-key",
    }
)
REDACTED_QUERY_PARAMS = frozenset({"token", "ts"})
PAYLOAD_PATH_PREFIXES = ("/v1/webhooks/chatwoot", "/v1/lgpd")


def _redact_query(query: str) -> str:
    pairs = parse_qsl(query, keep_blank_values=True)
    return urlencode([(k, REDACTED if k in REDACTED_QUERY_PARAMS else v) for k, v in pairs])


def scrub_event(event: dict[str, Any], hint: dict[str, Any]) -> dict[str, Any]:
    request = event.get("request") or {}
    headers = request.get("headers") or {}
    for name in list(headers):
        if name.lower() in REDACTED_HEADERS:
            headers[name] = REDACTED

    if request.get("query_string"):
        request["query_string"] = _redact_query(request["query_string"])

    url = request.get("url") or ""
    if any(prefix in url for prefix in PAYLOAD_PATH_PREFIXES):
        request.pop("data", None)

    exc_info = hint.get("exc_info")
    if exc_info and isinstance(exc_info[1], UpstreamApiError):
        error = exc_info[1]
        tags = event.setdefault("tags", {})
        tags["upstream"] = error.upstream
        tags["upstream_operation"] = error.operation
        tags["upstream_status"] = str(error.http_status_code or 0)
    return event


def init_sentry(
    dsn: str | None,
    environment: str = "development",
    release: str | None = None,
) -> None:
    """No-op without a DSN."""
    if not dsn:
        logger.warning("sentry_disabled", reason="SENTRY_DSN not set")
        return

    traces_sample_rate = 0.1 if environment == "production" else 1.0
    sentry_sdk.init(
        dsn=dsn,
        environment=environment,
        release=release,
        traces_sample_rate=traces_sample_rate,
        integrations=[
            FastApiIntegration(transaction_style="endpoint"),
            SqlalchemyIntegration(),
            CeleryIntegration(monitor_beat_tasks=True),
            RedisIntegration(),
            HttpxIntegration(),
        ],
        send_default_pii=False,
        before_send=scrub_event,
    )
    logger.info(
        "sentry_initialized",
        environment=environment,
        release=release,
        traces_sample_rate=traces_sample_rate,
    )
