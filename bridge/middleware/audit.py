"""API access auditing.

Records sensitive-endpoint traffic and every error response through
``AuditService.log_api_access``. The entry itself is written by the audit
worker, so the request only pays for the enqueue.
"""

import time

import structlog
from starlette.concurrency import run_in_threadpool
from starlette.requests import Request
from starlette.types import ASGIApp, Message, Receive, Scope, Send

from bridge.modules.audit.service import AuditService, should_log_api_access
from bridge.modules.webhooks.router import client_ip

logger = structlog.get_logger()

AUDIT_EXEMPT_PATHS = frozenset({
    "/health",
    "/docs",
    "/redoc",
    "/openapi.json",
})


class AuditMiddleware:
    """Pure ASGI middleware that reports API access to the audit trail."""

    def __init__(self, app: ASGIApp) -> None:
        self.app = app

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http" or scope["path"] in AUDIT_EXEMPT_PATHS:
            await self.app(scope, receive, send)
            return

        started = time.perf_counter()
        response_status = 500

        async def capture_send(message: Message) -> None:
            nonlocal response_status
            if message["type"] == "http.response.start":
                response_status = message.get("status", 500)
            await send(message)

        try:
            await self.app(scope, receive, capture_send)
        finally:
            elapsed_ms = round((time.perf_counter() - started) * 1000, 2)
            path = scope["path"]
            if should_log_api_access(path, response_status):
                request = Request(scope)
                await run_in_threadpool(
                    self._record,
                    request,
                    path,
                    scope["method"],
                    response_status,
                    elapsed_ms,
                )

    @staticmethod
    def _record(
        request: Request, path: str, method: str, status_code: int, elapsed_ms: float
    ) -> None:
        audit = AuditService(
            ip_address=client_ip(request),
            user_agent=(request.headers.get("user-agent") or "")[:500] or None,
        )
        # Set by verify_token on authenticated routes
        user_id = request.scope.get("state", {}).get("user_id")
        audit.log_api_access(user_id, path, method, status_code, elapsed_ms)
