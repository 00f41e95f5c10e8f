"""
Celery worker for the Chatwoot/Krayin bridge.

Start worker:    celery -A bridge.worker worker --loglevel=info
Start beat:      celery -A bridge.worker beat --loglevel=info
Start both:      celery -A bridge.worker worker --beat --loglevel=info
"""
from celery import Celery
from celery.schedules import crontab

from bridge.core.celery_config import CELERY_QUEUES, CELERY_TASK_ANNOTATIONS, CELERY_TASK_ROUTES
from bridge.core.config import settings
from bridge.core.sentry import init_sentry

celery_app = Celery(
    "bridge_worker",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.REDIS_URL,
    include=[
        "bridge.modules.webhooks.tasks",
        "bridge.modules.audit.tasks",
        "bridge.modules.lgpd.tasks",
    ],
)

init_sentry(
    dsn=settings.SENTRY_DSN,
    environment=settings.SENTRY_ENVIRONMENT,
    release=settings.APP_VERSION,
)

celery_app.conf.update(
    task_serializer="json",
    result_serializer="json",
    accept_content=["json"],
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    worker_prefetch_multiplier=1,
    result_expires=86400,  # 24h
    task_queues=CELERY_QUEUES,
    task_routes=CELERY_TASK_ROUTES,
    task_annotations=CELERY_TASK_ANNOTATIONS,
    task_default_queue="webhooks-normal",
)

celery_app.conf.beat_schedule = {
    # ── Retention ───────────────────────────────────────────────────────────
    "cleanup-old-audit-logs": {
        "task": "tasks.cleanup_old_audit_logs",
        "schedule": crontab(hour=3, minute=0),  # 3am UTC daily
    },
    "enforce-consent-retention": {
        "task": "tasks.enforce_consent_retention",
        "schedule": crontab(hour=3, minute=30),  # 3:30am UTC daily
    },
}
