"""Retry policy shared by every Celery job.

Each job kind declares a ``JobPolicy``: how many attempts it gets, the
fixed escalating backoff between them, its wall-clock limit, and its queue.
``run_with_policy`` executes one attempt and turns the outcome into a
Celery retry, or hands the error to the job's dead-letter hook.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, TypeVar

import structlog
from celery import Task

from bridge.core.errors import BridgeError

logger = structlog.get_logger()

T = TypeVar("T")


@dataclass(frozen=True)
class JobPolicy:
    max_attempts: int
    backoff: tuple[int, ...]
    time_limit: int
    queue: str

    @property
    def max_retries(self) -> int:
        return self.max_attempts - 1

    def countdown(self, attempt: int) -> int:
        """Delay before the attempt after ``attempt`` (1-based)."""
        return self.backoff[min(attempt - 1, len(self.backoff) - 1)]

    def should_retry(self, exc: BaseException, attempt: int) -> bool:
        return attempt < self.max_attempts and is_retryable(exc)


def is_retryable(exc: BaseException) -> bool:
    """Domain, consent and client errors are terminal; anything unclassified is retried."""
    if isinstance(exc, BridgeError):
        return exc.is_retryable
    return True


WEBHOOK_POLICY_HIGH = JobPolicy(5, (60, 120, 300, 600, 1800), 120, "webhooks-high")
WEBHOOK_POLICY_NORMAL = JobPolicy(5, (60, 120, 300, 600, 1800), 120, "webhooks-normal")
AUDIT_POLICY = JobPolicy(3, (60, 120, 300), 30, "audit-logs")
DELETION_POLICY = JobPolicy(3, (300, 600, 1800), 600, "lgpd-normal")
EXPORT_POLICY = JobPolicy(3, (300, 600, 1800), 1200, "lgpd-normal")
BULK_EXPORT_POLICY = JobPolicy(3, (300, 600, 1800), 3600, "exports-bulk")


def current_attempt(task: Task) -> int:
    return (task.request.retries or 0) + 1


def run_with_policy(
    task: Task,
    policy: JobPolicy,
    work: Callable[[], T],
    on_failure: Callable[[BaseException, int], Any],
    **log_context: Any,
) -> T:
    """Run one attempt of ``work``.

    Retryable failures with attempts left become ``task.retry`` with the
    policy's countdown. Otherwise ``on_failure`` persists the dead letter and
    the original error is re-raised so the job ends in FAILURE.
    """
    attempt = current_attempt(task)
    try:
        return work()
    except Exception as exc:
        if policy.should_retry(exc, attempt):
            countdown = policy.countdown(attempt)
            logger.warning(
                "job_attempt_failed",
                task=task.name,
                attempt=attempt,
                max_attempts=policy.max_attempts,
                countdown=countdown,
                error=str(exc),
                error_type=type(exc).__name__,
                **log_context,
            )
            raise task.retry(exc=exc, countdown=countdown, max_retries=policy.max_retries) from exc

        logger.critical(
            "job_failed_permanently",
            task=task.name,
            attempts=attempt,
            retryable=is_retryable(exc),
            error=str(exc),
            error_type=type(exc).__name__,
            **log_context,
        )
        on_failure(exc, attempt)
        raise
