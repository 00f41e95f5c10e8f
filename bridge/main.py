from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import structlog
from fastapi import APIRouter, FastAPI, Request
from fastapi.responses import Response
from starlette.exceptions import HTTPException as StarletteHTTPException

from bridge.core.config import settings
from bridge.core.errors import (
    BridgeError,
    bridge_exception_handler,
    global_exception_handler,
    http_exception_handler,
)
from bridge.core.sentry import init_sentry
from bridge.middleware.audit import AuditMiddleware
from bridge.middleware.security import RequestBodySizeLimitMiddleware, SecurityHeadersMiddleware
from bridge.middleware.signature import WebhookSignatureMiddleware

import bridge.models  # noqa: F401  register all models at startup
import bridge.worker  # noqa: F401  bind shared tasks to the configured Celery app

from bridge.modules.dead_letters.router import router as dead_letters_router
from bridge.modules.insights.router import router as insights_router
from bridge.modules.lgpd.router import export_router
from bridge.modules.lgpd.router import router as lgpd_router
from bridge.modules.webhooks.router import router as webhooks_router

# ── Sentry, initialised BEFORE the FastAPI app is created ─────────────────────
init_sentry(settings.SENTRY_DSN, settings.SENTRY_ENVIRONMENT, settings.APP_VERSION)

logger = structlog.get_logger()

# Exports and consent payloads are small; webhooks have their own tighter limit
MAX_REQUEST_BODY_BYTES = 10_485_760


@asynccontextmanager
async def lifespan(_app: FastAPI) -> AsyncGenerator[None]:
    logger.info("bridge_api_starting", env=settings.APP_ENV)
    yield
    logger.info("bridge_api_stopping")


_is_prod = settings.APP_ENV == "production"

app = FastAPI(
    title="Chatwoot Krayin Bridge",
    description="Syncs Chatwoot conversations into Krayin CRM leads with LGPD consent and audit.",
    version="2.1.0",
    # Disable interactive docs in production
    docs_url=None if _is_prod else "/docs",
    redoc_url=None if _is_prod else "/redoc",
    openapi_url=None if _is_prod else "/openapi.json",
    lifespan=lifespan,
)

app.add_exception_handler(BridgeError, bridge_exception_handler)  # type: ignore[arg-type]
app.add_exception_handler(StarletteHTTPException, http_exception_handler)  # type: ignore[arg-type]
app.add_exception_handler(Exception, global_exception_handler)

app.add_middleware(WebhookSignatureMiddleware)  # type: ignore[arg-type]
app.add_middleware(AuditMiddleware)  # type: ignore[arg-type]
# Security middleware (added last = outermost = first to see requests, last to touch responses)
app.add_middleware(
    RequestBodySizeLimitMiddleware,  # type: ignore[arg-type]
    max_bytes=MAX_REQUEST_BODY_BYTES,
)
app.add_middleware(
    SecurityHeadersMiddleware,  # type: ignore[arg-type]
    is_production=_is_prod,
)


# ── X-API-Version response header ────────────────────────────────────────────


@app.middleware("http")
async def add_version_header(request: Request, call_next) -> Response:
    response = await call_next(request)
    response.headers["X-API-Version"] = "v1"
    return response


# ── Health check (root-level, not under /v1) ─────────────────────────────────


def _probe_upstream(factory) -> dict:
    with factory() as client:
        result = client.health_check()
    return {
        "status": "healthy" if result["status"] == "ok" else "unhealthy",
        "response_time_ms": result["response_time_ms"],
        "code": result["code"],
    }


@app.get("/health")
def health_check() -> dict:
    """Deep health check: probes the database, Redis, Krayin and Chatwoot."""
    from bridge.modules.chatwoot.client import get_chatwoot_client
    from bridge.modules.krayin.client import get_krayin_client

    checks: dict[str, dict] = {}

    # ── Database ──────────────────────────────────────────────────────────────
    try:
        from sqlalchemy import text

        from bridge.core.database import engine

        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        checks["database"] = {"status": "healthy"}
    except Exception as exc:
        checks["database"] = {"status": "unhealthy", "error": str(exc)}

    # ── Redis ─────────────────────────────────────────────────────────────────
    try:
        import redis

        r = redis.Redis.from_url(settings.REDIS_URL, socket_connect_timeout=2)
        r.ping()
        r.close()
        checks["redis"] = {"status": "healthy"}
    except Exception as exc:
        checks["redis"] = {"status": "unhealthy", "error": str(exc)}

    # ── Upstreams (health_check never raises) ─────────────────────────────────
    checks["krayin"] = _probe_upstream(get_krayin_client)
    checks["chatwoot"] = _probe_upstream(get_chatwoot_client)

    overall = (
        "healthy"
        if all(c["status"] == "healthy" for c in checks.values())
        else "degraded"
    )
    return {"status": overall, "service": "chatwoot-krayin-bridge", "checks": checks}


# ── /v1 versioned router ──────────────────────────────────────────────────────

api_v1 = APIRouter(prefix="/v1")
api_v1.include_router(webhooks_router)
api_v1.include_router(dead_letters_router)
api_v1.include_router(lgpd_router)
api_v1.include_router(export_router)
api_v1.include_router(insights_router)

app.include_router(api_v1)
