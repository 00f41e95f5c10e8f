"""Resilient HTTP client base shared by every upstream integration.

One logical call = rate-limit check, circuit-breaker check, then up to
``retry_attempts`` HTTP attempts under a tenacity backoff policy.
Only retryable failures (5xx, 429, network errors) are retried; backoff
sleeps block the calling worker.
"""

from __future__ import annotations

import hashlib
import html
import json
import time
import uuid
from collections.abc import Callable
from typing import Any, Self

import httpx
import structlog
from tenacity import (
    RetryCallState,
    Retrying,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
    wait_random,
)

from bridge.core.errors import UpstreamApiError
from bridge.core.shared_state import SharedState, get_shared_state
from bridge.services.resilience import CircuitBreaker, RateLimiter
from bridge.services.response_cache import ResponseCache

logger = structlog.get_logger()

USER_AGENT = "Bridge-Service/2.1"
CLIENT_VERSION = "2.1"

MAX_RETRY_DELAY_S = 30
MAX_JITTER_S = 1
RESPONSE_PREVIEW_CHARS = 500


def sanitize_data(data: Any) -> Any:
    """Drop None/empty-string values; trim and HTML-escape every string."""
    if isinstance(data, dict):
        return {
            key: sanitize_data(value)
            for key, value in data.items()
            if value is not None and value != ""
        }
    if isinstance(data, list):
        return [sanitize_data(item) for item in data if item is not None and item != ""]
    if isinstance(data, str):
        return html.escape(data.strip(), quote=True)
    return data


def params_digest(params: dict[str, Any]) -> str:
    """Stable cache-key fragment for a query-parameter dict."""
    return hashlib.md5(  # noqa: S324
        json.dumps(params, sort_keys=True, default=str).encode()
    ).hexdigest()


def is_retryable_error(exc: BaseException) -> bool:
    return isinstance(exc, UpstreamApiError) and exc.is_retryable


class ResilientApiClient:
    upstream: str = ""
    health_path: str = "/health"

    def __init__(
        self,
        base_url: str,
        api_token: str,
        *,
        state: SharedState | None = None,
        timeout: float = 10.0,
        connect_timeout: float = 5.0,
        retry_attempts: int = 3,
        retry_delay_ms: int = 1000,
        rate_limit_per_minute: int = 60,
        circuit_breaker_threshold: int = 5,
        circuit_breaker_timeout: int = 300,
        verify_ssl: bool = True,
        max_redirects: int = 3,
        debug: bool = False,
        transport: httpx.BaseTransport | None = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.time,
        cache_background: Callable[[Callable[[], None]], None] | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.state = state or get_shared_state()
        self.retry_attempts = max(retry_attempts, 1)
        self.retry_delay_ms = retry_delay_ms
        self.debug = debug
        self.sleep = sleep
        self.rate_limiter = RateLimiter(self.state, self.upstream, rate_limit_per_minute)
        self.circuit_breaker = CircuitBreaker(
            self.state,
            self.upstream,
            threshold=circuit_breaker_threshold,
            timeout=circuit_breaker_timeout,
            clock=clock,
        )
        self.cache = ResponseCache(self.state, self.upstream, background=cache_background)
        self._http = httpx.Client(
            base_url=self.base_url,
            timeout=httpx.Timeout(timeout, connect=connect_timeout),
            verify=verify_ssl,
            follow_redirects=True,
            max_redirects=max_redirects,
            transport=transport,
            headers={
                "Authorization": f"Bearer {api_token}",
                "Accept": "application/json",
                "Content-Type": "application/json",
                "User-Agent": USER_AGENT,
                "X-Client-Version": CLIENT_VERSION,
            },
        )

    def close(self) -> None:
        self._http.close()

    def __enter__(self) -> Self:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    # ── Core call path ───────────────────────────────────────────────────────

    def request(
        self,
        method: str,
        path: str,
        *,
        operation: str,
        json: dict[str, Any] | None = None,
        params: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
    ) -> dict[str, Any]:
        self.rate_limiter.hit(operation)
        self.circuit_breaker.before_call(operation)

        body = sanitize_data(json) if json is not None else None
        try:
            for attempt in self._retrying(operation):
                with attempt:
                    data = self._send(
                        method,
                        path,
                        operation=operation,
                        attempt=attempt.retry_state.attempt_number,
                        json=body,
                        params=params,
                        headers=headers,
                    )
        except UpstreamApiError as error:
            self.circuit_breaker.record_failure()
            if error.is_retryable:
                logger.error(
                    "upstream_request_failed_permanently",
                    upstream=self.upstream,
                    operation=operation,
                    attempts=error.attempts,
                    error=error.message,
                    context=error.context,
                )
            raise

        self.circuit_breaker.record_success()
        return data

    def _retrying(self, operation: str) -> Retrying:
        """Exponential backoff from ``retry_delay_ms``, capped at 30s, plus up to 1s jitter."""

        def _log_retry(retry_state: RetryCallState) -> None:
            error = retry_state.outcome.exception() if retry_state.outcome else None
            delay = retry_state.next_action.sleep if retry_state.next_action else 0
            logger.warning(
                "upstream_request_retrying",
                upstream=self.upstream,
                operation=operation,
                attempt=retry_state.attempt_number,
                delay_ms=int(delay * 1000),
                error=getattr(error, "message", str(error)),
            )

        return Retrying(
            retry=retry_if_exception(is_retryable_error),
            stop=stop_after_attempt(self.retry_attempts),
            wait=wait_exponential(multiplier=self.retry_delay_ms / 1000, max=MAX_RETRY_DELAY_S)
            + wait_random(0, MAX_JITTER_S),
            sleep=self.sleep,
            before_sleep=_log_retry,
            reraise=True,
        )

    def _send(
        self,
        method: str,
        path: str,
        *,
        operation: str,
        attempt: int,
        json: dict[str, Any] | None,
        params: dict[str, Any] | None,
        headers: dict[str, str] | None,
    ) -> dict[str, Any]:
        try:
            response = self._http.request(
                method,
                path,
                json=json,
                params=params,
                headers={"X-Request-ID": str(uuid.uuid4()), **(headers or {})},
            )
        except httpx.HTTPError as exc:
            raise UpstreamApiError(
                f"{self.upstream} API request failed: {exc}",
                upstream=self.upstream,
                operation=operation,
                attempts=attempt,
                context={"operation": operation, "attempt": attempt},
            ) from exc
        return self._handle_response(response, operation, attempt)

    def _handle_response(
        self, response: httpx.Response, operation: str, attempt: int
    ) -> dict[str, Any]:
        status_code = response.status_code
        body = response.text
        self._log_request_response(operation, status_code, body)

        try:
            data = response.json() if body else {}
        except ValueError:
            data = {}

        if 200 <= status_code < 300:
            return data if isinstance(data, dict) else {"data": data}

        message = "Unknown API error"
        if isinstance(data, dict):
            message = data.get("message") or data.get("error") or message
        raise UpstreamApiError(
            f"{self.upstream} API error: {message}",
            upstream=self.upstream,
            operation=operation,
            status_code=status_code,
            attempts=attempt,
            response_body=body,
            context={"operation": operation, "status_code": status_code},
        )

    def _log_request_response(self, operation: str, status_code: int, body: str) -> None:
        if self.debug or status_code >= 400:
            logger.info(
                "upstream_request",
                upstream=self.upstream,
                operation=operation,
                status_code=status_code,
                response_size=len(body),
                response_preview=body[:RESPONSE_PREVIEW_CHARS],
            )

    # ── Monitoring ───────────────────────────────────────────────────────────

    def health_check(self) -> dict[str, Any]:
        """Never raises: bypasses limiter/breaker so it can observe an outage."""
        start = time.monotonic()
        try:
            response = self._http.get(self.health_path, timeout=5.0)
        except httpx.HTTPError as exc:
            return {"status": "error", "response_time_ms": None, "code": 0, "message": str(exc)}
        elapsed = round((time.monotonic() - start) * 1000, 2)
        healthy = response.status_code == 200
        return {
            "status": "ok" if healthy else "error",
            "response_time_ms": elapsed,
            "code": response.status_code,
            "message": "API is healthy" if healthy else "API returned error status",
        }

    def cache_ttls(self) -> dict[str, int]:
        return {}

    def get_stats(self) -> dict[str, Any]:
        return {
            "upstream": self.upstream,
            "rate_limit_remaining": self.rate_limiter.remaining(),
            "circuit_breaker_state": self.circuit_breaker.status,
            "circuit_breaker_failures": self.circuit_breaker.failures,
            "cache_ttls": self.cache_ttls(),
            "cache_performance": self.cache.stats(),
        }
