"""Signing primitives: Chatwoot webhook HMAC, export download tokens, operator JWTs."""

import hashlib
import hmac
import time
from datetime import datetime, timedelta, timezone

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt

from bridge.core.config import settings

bearer_scheme = HTTPBearer()

ALGORITHM = "HS256"

SIGNATURE_PREFIX = "sha256="


# ── Webhook signatures ────────────────────────────────────────────────────────


def compute_webhook_signature(secret: str, timestamp: str, body: bytes) -> str:
    """``sha256=`` + hex HMAC-SHA256 over ``"{timestamp}.{raw_body}"``."""
    message = timestamp.encode() + b"." + body
    return SIGNATURE_PREFIX + hmac.new(secret.encode(), message, hashlib.sha256).hexdigest()


def verify_webhook_signature(
    secret: str, timestamp: str, body: bytes, signature: str
) -> bool:
    expected = compute_webhook_signature(secret, timestamp, body)
    return hmac.compare_digest(expected, signature)


def timestamp_within_tolerance(
    timestamp: str, tolerance: int, now: float | None = None
) -> bool:
    try:
        sent_at = int(timestamp)
    except (TypeError, ValueError):
        return False
    current = time.time() if now is None else now
    return abs(current - sent_at) <= tolerance


# ── Export download links ─────────────────────────────────────────────────────


def export_download_token(filename: str, timestamp: int, secret: str | None = None) -> str:
    key = settings.SECRET_KEY if secret is None else secret
    return hashlib.sha256(f"{filename}{timestamp}{key}".encode()).hexdigest()


def validate_download_token(
    filename: str,
    timestamp: int,
    token: str,
    max_age_seconds: int | None = None,
    now: float | None = None,
) -> bool:
    """Recompute the token for the supplied timestamp and reject expired links."""
    if max_age_seconds is None:
        max_age_seconds = settings.EXPORT_LINK_TTL_HOURS * 3600
    current = time.time() if now is None else now
    if timestamp > current or current - timestamp > max_age_seconds:
        return False
    return hmac.compare_digest(export_download_token(filename, timestamp), token)


# ── Operator tokens ───────────────────────────────────────────────────────────


def create_access_token(data: dict[str, str | datetime], expires_delta: timedelta | None = None) -> str:
    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(hours=24))
    to_encode["exp"] = expire
    return jwt.encode(to_encode, settings.SECRET_KEY, algorithm=ALGORITHM)


def verify_token(
    request: Request,
    credentials: HTTPAuthorizationCredentials = Depends(bearer_scheme),
) -> dict[str, str]:
    """Operator endpoints: HS256 bearer token signed with SECRET_KEY.

    The operator id is also left on ``request.state`` for the audit middleware.
    """
    token = credentials.credentials
    try:
        payload = jwt.decode(token, settings.SECRET_KEY, algorithms=[ALGORITHM])
        user_id: str | None = payload.get("sub")
        if user_id is None:
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Invalid token: missing claims",
            )
        request.state.user_id = user_id
        return {"user_id": user_id, "role": payload.get("role", "operator")}
    except JWTError as e:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Could not validate credentials",
        ) from e
