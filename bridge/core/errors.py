"""Error taxonomy and the JSON error envelope shared by all API endpoints."""
from datetime import datetime, timezone
from typing import Any

import sentry_sdk
import structlog
from fastapi import HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

logger = structlog.get_logger()


class ErrorResponse(BaseModel):
    """Standard error envelope returned by all API error handlers."""
    success: bool = False
    error: str
    error_code: str
    details: Any = None
    timestamp: str


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def error_envelope(
    error: str, error_code: str, details: Any = None
) -> dict[str, Any]:
    return ErrorResponse(
        error=error,
        error_code=error_code,
        details=details,
        timestamp=_now_iso(),
    ).model_dump()


# ── Exceptions ────────────────────────────────────────────────────────────────


class BridgeError(Exception):
    """Base class for errors rendered into the error envelope."""

    error_code: str = "BRIDGE_ERROR"
    status_code: int = 500
    retryable: bool = False

    def __init__(self, message: str, *, details: Any = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details

    @property
    def is_retryable(self) -> bool:
        return self.retryable


class DomainValidationError(BridgeError, ValueError):
    """An enum or field value outside its allowed set. Never retried."""

    error_code = "VALIDATION_ERROR"
    status_code = 422


class MissingMappingError(BridgeError):
    """A prerequisite mapping row does not exist yet."""

    error_code = "MAPPING_NOT_FOUND"
    status_code = 404


class ConsentError(BridgeError):
    """LGPD consent violation. Terminal: never retried by the job runner."""

    _STATUS_BY_CODE: dict[str, int] = {
        "CONSENT_NOT_FOUND": 404,
        "CONSENT_ALREADY_EXISTS": 409,
        "CONSENT_INVALID_TYPE": 422,
        "CONSENT_VALIDATION_ERROR": 422,
        "CONSENT_REQUIRED": 403,
        "CONSENT_AUDIT_ERROR": 500,
        "CONSENT_RATE_LIMIT_EXCEEDED": 429,
        "CONSENT_SERVICE_UNAVAILABLE": 503,
    }

    def __init__(self, message: str, error_code: str, *, details: Any = None) -> None:
        super().__init__(message, details=details)
        self.error_code = error_code
        self.status_code = self._STATUS_BY_CODE.get(error_code, 400)

    @classmethod
    def not_found(cls, contact_id: int, consent_type: str) -> "ConsentError":
        return cls(
            f"No active {consent_type} consent for contact {contact_id}",
            "CONSENT_NOT_FOUND",
            details={"contact_id": contact_id, "consent_type": consent_type},
        )

    @classmethod
    def already_exists(cls, contact_id: int, consent_type: str) -> "ConsentError":
        return cls(
            f"Contact {contact_id} already has an active {consent_type} consent",
            "CONSENT_ALREADY_EXISTS",
            details={"contact_id": contact_id, "consent_type": consent_type},
        )

    @classmethod
    def invalid_type(cls, consent_type: str) -> "ConsentError":
        return cls(
            f"Invalid consent type: {consent_type}",
            "CONSENT_INVALID_TYPE",
            details={"consent_type": consent_type},
        )

    @classmethod
    def required(cls, contact_id: int, consent_type: str) -> "ConsentError":
        return cls(
            f"Contact {contact_id} has no valid {consent_type} consent",
            "CONSENT_REQUIRED",
            details={"contact_id": contact_id, "consent_type": consent_type},
        )


HTTP_ERROR_CODES: dict[int, str] = {
    400: "BAD_REQUEST",
    401: "UNAUTHORIZED",
    403: "FORBIDDEN",
    404: "NOT_FOUND",
    409: "CONFLICT",
    422: "VALIDATION_ERROR",
    429: "RATE_LIMIT_EXCEEDED",
    500: "INTERNAL_SERVER_ERROR",
    502: "BAD_GATEWAY",
    503: "SERVICE_UNAVAILABLE",
}

_USER_MESSAGES: dict[int, str] = {
    400: "Invalid request data provided",
    401: "Authentication failed. Please check your API credentials",
    403: "Access denied. Insufficient permissions",
    404: "The requested resource was not found",
    409: "Resource conflict. The resource may already exist",
    422: "Validation failed. Please check your input data",
    429: "Rate limit exceeded. Please try again later",
    500: "Internal server error. Please try again later",
    502: "Service temporarily unavailable. Please try again later",
    503: "Service temporarily unavailable. Please try again later",
}


def is_retryable_status(status_code: int | None) -> bool:
    """429 and 5xx are retryable, as are network failures (no status)."""
    if status_code is None:
        return True
    if 400 <= status_code < 500:
        return status_code == 429
    return status_code >= 500


class UpstreamApiError(BridgeError):
    """Any failure talking to an upstream API (Krayin, Chatwoot, insights).

    One type for every upstream: the ``upstream`` tag and the HTTP status
    carry the distinction, and ``error_code``/``is_retryable`` are derived
    from the status through ``HTTP_ERROR_CODES``.
    """

    def __init__(
        self,
        message: str,
        *,
        upstream: str,
        operation: str | None = None,
        status_code: int | None = None,
        attempts: int = 0,
        response_body: str | None = None,
        context: dict[str, Any] | None = None,
        retry_after: int | None = None,
        remaining_time: int | None = None,
    ) -> None:
        super().__init__(message)
        self.upstream = upstream
        self.operation = operation or "unknown"
        self.http_status_code = status_code
        self.attempts = attempts
        self.response_body = response_body
        self.context = context or {}
        self.retry_after = retry_after
        self.remaining_time = remaining_time
        self.details = {"upstream": upstream, "operation": self.operation}
        if retry_after is not None:
            self.details["retry_after"] = retry_after
        if remaining_time is not None:
            self.details["remaining_time"] = remaining_time

    @property
    def error_code(self) -> str:  # type: ignore[override]
        return HTTP_ERROR_CODES.get(self.http_status_code or 0, "UNKNOWN_ERROR")

    @property
    def status_code(self) -> int:  # type: ignore[override]
        return self.http_status_code or 502

    @property
    def is_retryable(self) -> bool:
        return is_retryable_status(self.http_status_code)

    @property
    def user_message(self) -> str:
        return _USER_MESSAGES.get(
            self.http_status_code or 0, "An unexpected error occurred"
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "message": self.message,
            "upstream": self.upstream,
            "operation": self.operation,
            "attempts": self.attempts,
            "http_status_code": self.http_status_code,
            "error_code": self.error_code,
            "is_retryable": self.is_retryable,
            "retry_after": self.retry_after,
            "remaining_time": self.remaining_time,
            "context": self.context,
            "response_body": self.response_body,
        }


# ── Handlers ──────────────────────────────────────────────────────────────────


async def bridge_exception_handler(request: Request, exc: BridgeError) -> JSONResponse:
    """Render domain and upstream errors into the standard envelope."""
    logger.warning(
        "request_failed",
        error=exc.message,
        error_code=exc.error_code,
        path=request.url.path,
        method=request.method,
    )
    message = exc.user_message if isinstance(exc, UpstreamApiError) else exc.message
    return JSONResponse(
        status_code=exc.status_code,
        content=error_envelope(message, exc.error_code, exc.details),
    )


async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch unhandled exceptions and return a consistent JSON envelope."""
    request_id = request.headers.get("x-request-id", "unknown")

    logger.error(
        "unhandled_exception",
        error=str(exc),
        error_type=type(exc).__name__,
        path=request.url.path,
        method=request.method,
        request_id=request_id,
    )

    sentry_sdk.capture_exception(exc)

    return JSONResponse(
        status_code=500,
        content=error_envelope(
            "An unexpected error occurred. Our team has been notified.",
            "INTERNAL_SERVER_ERROR",
            {"request_id": request_id},
        ),
    )


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Standardize HTTPException responses into the same JSON envelope."""
    if isinstance(exc.detail, dict):
        error = exc.detail.get("error", str(exc.detail))
        error_code = exc.detail.get("error_code", f"HTTP_{exc.status_code}")
        details: Any = exc.detail.get("details")
    else:
        error = str(exc.detail)
        error_code = HTTP_ERROR_CODES.get(exc.status_code, f"HTTP_{exc.status_code}")
        details = None

    return JSONResponse(
        status_code=exc.status_code,
        content=error_envelope(error, error_code, details),
        headers=dict(exc.headers or {}),
    )
