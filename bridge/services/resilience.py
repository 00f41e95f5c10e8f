"""Per-upstream rate limiter and circuit breaker over ``SharedState``.

Both keep their counters in the shared backend, so every worker talking to
the same upstream contributes to (and is throttled by) the same numbers.
"""

from __future__ import annotations

import time
from collections.abc import Callable

import structlog

from bridge.core.errors import UpstreamApiError
from bridge.core.shared_state import SharedState

logger = structlog.get_logger()

CIRCUIT_STATE_TTL = 3600


class RateLimiter:
    """Fixed one-minute window: at most ``max_per_minute`` calls per upstream."""

    def __init__(
        self,
        state: SharedState,
        upstream: str,
        max_per_minute: int = 60,
        window_seconds: int = 60,
    ) -> None:
        self.state = state
        self.upstream = upstream
        self.key = f"{upstream}_api_requests"
        self.max_per_minute = max_per_minute
        self.window_seconds = window_seconds

    def hit(self, operation: str | None = None) -> None:
        """Count one call; raise RATE_LIMIT_EXCEEDED without touching the network."""
        count = self.state.incr(self.key, ttl=self.window_seconds)
        if count > self.max_per_minute:
            retry_after = self.state.ttl(self.key) or self.window_seconds
            logger.warning(
                "rate_limit_exceeded",
                upstream=self.upstream,
                operation=operation,
                retry_after=retry_after,
            )
            raise UpstreamApiError(
                f"{self.upstream} API rate limit exceeded. Retry after {retry_after} seconds",
                upstream=self.upstream,
                operation=operation,
                status_code=429,
                retry_after=retry_after,
            )

    def remaining(self) -> int:
        used = int(self.state.get(self.key) or 0)
        return max(self.max_per_minute - used, 0)


class CircuitBreaker:
    """Open after ``threshold`` failures; admit one probe after ``timeout`` seconds."""

    def __init__(
        self,
        state: SharedState,
        upstream: str,
        threshold: int = 5,
        timeout: int = 300,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.state = state
        self.upstream = upstream
        self.threshold = threshold
        self.timeout = timeout
        self.clock = clock
        self.failures_key = f"{upstream}_circuit_breaker_failures"
        self.last_failure_key = f"{upstream}_circuit_breaker_last_failure"
        self.probe_key = f"{upstream}_circuit_breaker_half_open"

    @property
    def failures(self) -> int:
        return int(self.state.get(self.failures_key) or 0)

    def _elapsed_since_failure(self) -> float:
        last_failure = float(self.state.get(self.last_failure_key) or 0)
        return self.clock() - last_failure

    @property
    def status(self) -> str:
        if self.failures < self.threshold:
            return "closed"
        if self._elapsed_since_failure() < self.timeout:
            return "open"
        return "half_open"

    def before_call(self, operation: str | None = None) -> None:
        """Raise SERVICE_UNAVAILABLE while open; let exactly one probe through when half-open."""
        if self.failures < self.threshold:
            return

        elapsed = self._elapsed_since_failure()
        if elapsed < self.timeout:
            remaining = int(self.timeout - elapsed)
            raise UpstreamApiError(
                f"{self.upstream} API circuit breaker is open. Retry in {remaining} seconds",
                upstream=self.upstream,
                operation=operation,
                status_code=503,
                remaining_time=remaining,
            )

        if not self.state.add(self.probe_key, "1", ttl=self.timeout):
            raise UpstreamApiError(
                f"{self.upstream} API circuit breaker is half-open and a probe is in flight",
                upstream=self.upstream,
                operation=operation,
                status_code=503,
                remaining_time=self.state.ttl(self.probe_key),
            )
        logger.info("circuit_breaker_half_open_probe", upstream=self.upstream, operation=operation)

    def record_failure(self) -> None:
        failures = self.state.incr(self.failures_key, ttl=CIRCUIT_STATE_TTL)
        # The window rolls: each failure keeps the count alive for another hour
        self.state.expire(self.failures_key, CIRCUIT_STATE_TTL)
        self.state.set(self.last_failure_key, str(self.clock()), ttl=CIRCUIT_STATE_TTL)
        self.state.delete(self.probe_key)
        if failures >= self.threshold:
            logger.error(
                "circuit_breaker_opened",
                upstream=self.upstream,
                failures=failures,
                timeout=self.timeout,
            )

    def record_success(self) -> None:
        if self.state.delete(self.failures_key, self.last_failure_key, self.probe_key):
            logger.info("circuit_breaker_reset", upstream=self.upstream)

    def reset(self) -> None:
        self.state.delete(self.failures_key, self.last_failure_key, self.probe_key)
