"""Chatwoot webhook signature verification.

Pure ASGI so the raw body can be buffered once, checked, and replayed to
the route unchanged.
"""

import json

import structlog
from starlette.types import ASGIApp, Message, Receive, Scope, Send

from bridge.core.config import settings
from bridge.core.errors import error_envelope
from bridge.core.security import timestamp_within_tolerance, verify_webhook_signature

logger = structlog.get_logger()

WEBHOOK_PATH_PREFIX = "/v1/webhooks/chatwoot"

SIGNATURE_HEADER = b"x-chatwoot-signature"
TIMESTAMP_HEADER = b"x-chatwoot-timestamp"


class PayloadTooLarge(Exception):
    pass


class WebhookSignatureMiddleware:
    """Reject unsigned, stale, oversized or forged Chatwoot deliveries."""

    def __init__(
        self,
        app: ASGIApp,
        *,
        path_prefix: str = WEBHOOK_PATH_PREFIX,
        secret: str | None = None,
        tolerance: int | None = None,
        max_bytes: int | None = None,
    ) -> None:
        self.app = app
        self.path_prefix = path_prefix
        self._secret = secret
        self._tolerance = tolerance
        self._max_bytes = max_bytes

    # Settings are read per request so tests can override them
    @property
    def secret(self) -> str:
        return settings.CHATWOOT_WEBHOOK_SECRET if self._secret is None else self._secret

    @property
    def tolerance(self) -> int:
        return settings.WEBHOOK_TIMESTAMP_TOLERANCE if self._tolerance is None else self._tolerance

    @property
    def max_bytes(self) -> int:
        return settings.WEBHOOK_MAX_PAYLOAD_BYTES if self._max_bytes is None else self._max_bytes

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if (
            scope["type"] != "http"
            or scope["method"] != "POST"
            or not scope["path"].startswith(self.path_prefix)
        ):
            await self.app(scope, receive, send)
            return

        headers = dict(scope.get("headers", []))
        client = scope.get("client")
        log = logger.bind(path=scope["path"], ip=client[0] if client else None)

        try:
            body = await self._read_body(headers, receive)
        except PayloadTooLarge:
            log.warning("webhook_payload_too_large", max_bytes=self.max_bytes)
            await self._reject(send, 413, "Payload too large", "PAYLOAD_TOO_LARGE")
            return

        signature = headers.get(SIGNATURE_HEADER, b"").decode("latin-1")
        timestamp = headers.get(TIMESTAMP_HEADER, b"").decode("latin-1")
        if not signature or not timestamp:
            log.warning("webhook_missing_headers")
            await self._reject(send, 401, "Missing signature headers", "MISSING_HEADERS")
            return

        if not timestamp_within_tolerance(timestamp, self.tolerance):
            log.warning("webhook_timestamp_expired", timestamp=timestamp)
            await self._reject(send, 401, "Request timestamp expired", "TIMESTAMP_EXPIRED")
            return

        if not self.secret:
            log.error("webhook_secret_not_configured")
            await self._reject(send, 500, "Webhook secret not configured", "CONFIGURATION_ERROR")
            return

        if not verify_webhook_signature(self.secret, timestamp, body, signature):
            log.warning("webhook_invalid_signature")
            await self._reject(send, 403, "Invalid signature", "INVALID_SIGNATURE")
            return

        await self.app(scope, self._replay(body, receive), send)

    async def _read_body(self, headers: dict[bytes, bytes], receive: Receive) -> bytes:
        raw_cl = headers.get(b"content-length")
        if raw_cl:
            try:
                if int(raw_cl) > self.max_bytes:
                    raise PayloadTooLarge
            except ValueError:
                pass  # Malformed header; the streamed size is still enforced below

        chunks: list[bytes] = []
        size = 0
        more_body = True
        while more_body:
            message = await receive()
            chunk = message.get("body", b"")
            size += len(chunk)
            if size > self.max_bytes:
                raise PayloadTooLarge
            chunks.append(chunk)
            more_body = message.get("more_body", False)
        return b"".join(chunks)

    @staticmethod
    def _replay(body: bytes, downstream: Receive) -> Receive:
        sent = False

        async def receive() -> Message:
            nonlocal sent
            if sent:
                return await downstream()
            sent = True
            return {"type": "http.request", "body": body, "more_body": False}

        return receive

    @staticmethod
    async def _reject(send: Send, status: int, error: str, error_code: str) -> None:
        body = json.dumps(error_envelope(error, error_code)).encode()
        await send(
            {
                "type": "http.response.start",
                "status": status,
                "headers": [
                    (b"content-type", b"application/json"),
                    (b"content-length", str(len(body)).encode()),
                ],
            }
        )
        await send({"type": "http.response.body", "body": body, "more_body": False})
