"""Shared test fixtures for the bridge test suite."""

import os
import tempfile

# Settings are read at import time; point them at throwaway backends first
os.environ["APP_ENV"] = "testing"
os.environ["DATABASE_URL"] = "sqlite+pysqlite:///:memory:"
os.environ["CHATWOOT_WEBHOOK_SECRET"] = "test-webhook-secret"
os.environ["EXPORT_STORAGE_PATH"] = tempfile.mkdtemp(prefix="bridge-exports-")
os.environ["API_URL"] = "http://testserver"
os.environ.pop("SENTRY_DSN", None)

import hashlib  # noqa: E402
import hmac  # noqa: E402
import json  # noqa: E402
import time  # noqa: E402
from collections.abc import AsyncGenerator, Callable, Generator  # noqa: E402
from typing import Any  # noqa: E402
from unittest.mock import MagicMock, patch  # noqa: E402

import httpx  # noqa: E402
import pytest  # noqa: E402
from httpx import ASGITransport, AsyncClient  # noqa: E402
from sqlalchemy.orm import Session  # noqa: E402

import bridge.models  # noqa: E402,F401
from bridge.core.database import Base, SessionFactory, engine  # noqa: E402
from bridge.core.security import create_access_token  # noqa: E402
from bridge.core.shared_state import InMemorySharedState, set_shared_state  # noqa: E402
from bridge.modules.krayin.client import CachedKrayinClient  # noqa: E402

WEBHOOK_SECRET = "test-webhook-secret"
OPERATOR_ID = "operator-1"


class FakeClock:
    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture(autouse=True)
def _schema() -> Generator[None]:
    Base.metadata.create_all(engine)
    yield
    Base.metadata.drop_all(engine)


@pytest.fixture
def db() -> Generator[Session]:
    session = SessionFactory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture(autouse=True)
def state(clock: FakeClock) -> Generator[InMemorySharedState]:
    """Every test gets a fresh in-memory backend as the process-wide shared state."""
    shared = InMemorySharedState(clock=clock)
    set_shared_state(shared)
    yield shared
    set_shared_state(None)


@pytest.fixture(autouse=True)
def audit_queue() -> Generator[MagicMock]:
    """Capture audit entries instead of sending them to the broker."""
    with patch("bridge.modules.audit.service.enqueue_audit_log") as mock:
        yield mock


@pytest.fixture
def audited(audit_queue: MagicMock) -> Callable[[], list[str]]:
    """Actions queued for the audit trail so far, in order."""

    def actions() -> list[str]:
        return [call.args[0]["action"] for call in audit_queue.call_args_list]

    return actions


# ── HTTP upstream doubles ─────────────────────────────────────────────────────


class Upstream:
    """Records requests and answers them from a queue of canned responses."""

    def __init__(self) -> None:
        self.requests: list[httpx.Request] = []
        self.responses: list[httpx.Response | Exception] = []
        self.default = httpx.Response(200, json={"data": {}})

    def queue(self, *responses: httpx.Response | Exception) -> None:
        self.responses.extend(responses)

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.responses:
            response = self.responses.pop(0)
            if isinstance(response, Exception):
                raise response
            return response
        return self.default

    def json_body(self, index: int = -1) -> dict[str, Any]:
        return json.loads(self.requests[index].content)


@pytest.fixture
def upstream() -> Upstream:
    return Upstream()


@pytest.fixture
def client_factory(
    state: InMemorySharedState, clock: FakeClock, upstream: Upstream
) -> Callable[..., Any]:
    """Build any ResilientApiClient subclass wired to the mock upstream."""

    def build(cls: type, **overrides: Any) -> Any:
        options: dict[str, Any] = {
            "state": state,
            "transport": httpx.MockTransport(upstream),
            "sleep": lambda _seconds: None,
            "clock": clock,
            "cache_background": lambda fn: fn(),
        }
        options.update(overrides)
        return cls("https://upstream.test", "token-123", **options)

    return build


@pytest.fixture
def krayin(client_factory: Callable[..., Any]) -> CachedKrayinClient:
    return client_factory(CachedKrayinClient)


# ── API clients ───────────────────────────────────────────────────────────────


@pytest.fixture
async def client() -> AsyncGenerator[AsyncClient]:
    from bridge.main import app

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac


@pytest.fixture
def operator_token() -> str:
    return create_access_token({"sub": OPERATOR_ID, "role": "operator"})


@pytest.fixture
async def operator_client(client: AsyncClient, operator_token: str) -> AsyncClient:
    client.headers["Authorization"] = f"Bearer {operator_token}"
    return client


@pytest.fixture
def sign() -> Callable[..., dict[str, str]]:
    """Chatwoot-style signature headers for a raw body."""

    def signed_headers(
        body: bytes, secret: str = WEBHOOK_SECRET, timestamp: int | None = None
    ) -> dict[str, str]:
        ts = str(int(time.time()) if timestamp is None else timestamp)
        digest = hmac.new(secret.encode(), ts.encode() + b"." + body, hashlib.sha256).hexdigest()
        return {
            "Content-Type": "application/json",
            "X-Chatwoot-Signature": f"sha256={digest}",
            "X-Chatwoot-Timestamp": ts,
        }

    return signed_headers
