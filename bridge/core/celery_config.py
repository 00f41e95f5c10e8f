"""Celery queue topology: exchanges, queues, task routing, and per-task limits."""

from kombu import Exchange, Queue  # type: ignore[import-untyped]

# ── Exchanges ─────────────────────────────────────────────────────────────────

default_exchange = Exchange("default", type="direct")
priority_exchange = Exchange("priority", type="direct")

# ── Queues ────────────────────────────────────────────────────────────────────

CELERY_QUEUES = (
    # Webhooks that create or re-stage leads
    Queue("webhooks-high", priority_exchange, routing_key="webhooks-high",
          queue_arguments={"x-max-priority": 10}),
    # Message webhooks, highest volume
    Queue("webhooks-normal", default_exchange, routing_key="webhooks-normal"),
    # Audit writes; security events jump the line
    Queue("audit-logs-high", priority_exchange, routing_key="audit-logs-high"),
    Queue("audit-logs", default_exchange, routing_key="audit-logs"),
    # LGPD data-subject requests (erasure, single export)
    Queue("lgpd-normal", default_exchange, routing_key="lgpd-normal"),
    # Multi-contact exports, long running
    Queue("exports-bulk", default_exchange, routing_key="exports-bulk"),
    # Retention cleanup, never urgent
    Queue("retention", default_exchange, routing_key="retention"),
)

# ── Task routing ──────────────────────────────────────────────────────────────

CELERY_TASK_ROUTES: dict[str, dict] = {
    "tasks.process_conversation_created":        {"queue": "webhooks-high"},
    "tasks.process_conversation_status_changed": {"queue": "webhooks-high"},
    "tasks.process_message_created":             {"queue": "webhooks-normal"},

    "tasks.process_audit_log":                   {"queue": "audit-logs"},

    "tasks.process_data_deletion":               {"queue": "lgpd-normal"},
    "tasks.process_data_export":                 {"queue": "lgpd-normal"},
    "tasks.process_bulk_data_export":            {"queue": "exports-bulk"},

    "tasks.cleanup_old_audit_logs":              {"queue": "retention"},
    "tasks.enforce_consent_retention":           {"queue": "retention"},
}

# ── Per-task rate limits and time limits ──────────────────────────────────────

CELERY_TASK_ANNOTATIONS: dict[str, dict] = {
    "tasks.process_conversation_created": {
        "time_limit": 120,
        "soft_time_limit": 110,
    },
    "tasks.process_conversation_status_changed": {
        "time_limit": 120,
        "soft_time_limit": 110,
    },
    "tasks.process_message_created": {
        "time_limit": 120,
        "soft_time_limit": 110,
    },
    "tasks.process_audit_log": {
        "time_limit": 30,
        "soft_time_limit": 25,
    },
    "tasks.process_data_deletion": {
        "time_limit": 600,
        "soft_time_limit": 570,
    },
    "tasks.process_data_export": {
        "time_limit": 1200,
        "soft_time_limit": 1140,
    },
    "tasks.process_bulk_data_export": {
        "time_limit": 3600,
        "soft_time_limit": 3540,
    },
    "tasks.cleanup_old_audit_logs": {
        "time_limit": 900,
        "soft_time_limit": 840,
    },
    "tasks.enforce_consent_retention": {
        "time_limit": 900,
        "soft_time_limit": 840,
    },
}
