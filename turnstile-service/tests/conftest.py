"""Test configuration and shared fixtures for Turnstile service tests.

Uses the in-memory store and mock services so tests run without an Oracle
database or a live inference service.
"""

import time
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from turnstile_service.config import TurnstileSettings
from turnstile_service.db.memory_store import InMemoryKeyValueStore
from turnstile_service.models.gateway import QueryResponse, ResponseMetadata
from turnstile_service.models.policy import Policy, RateLimitCounter
from turnstile_service.models.session import Message, Session


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def make_settings(**overrides) -> TurnstileSettings:
    defaults = {
        "store_backend": "memory",
        "oracle_mode": "freepdb",
        "oracle_user": "test",
        "oracle_password": "test",
        "oracle_host": "localhost",
        "oracle_port": 1521,
        "oracle_service": "FREEPDB1",
        "oracle_pool_min": 1,
        "oracle_pool_max": 2,
        "auto_init": False,
        "invocation_retry_base_ms": 0,
        "invocation_timeout_ms": 1000,
    }
    defaults.update(overrides)
    return TurnstileSettings(**defaults)


def _now_ms() -> int:
    return int(time.time() * 1000)


# ---------------------------------------------------------------------------
# Mock pool & connection
# ---------------------------------------------------------------------------

class MockCursor:
    def __init__(self, rows=None, rowcount=0):
        self._rows = rows or []
        self.rowcount = rowcount

    async def execute(self, sql, params=None):
        pass

    async def fetchall(self):
        return self._rows

    async def fetchone(self):
        return self._rows[0] if self._rows else None


class MockConnection:
    def cursor(self):
        return MockCursor()

    async def execute(self, sql, params=None):
        return MockCursor()

    async def commit(self):
        pass

    async def __aenter__(self):
        return self

    async def __aexit__(self, *args):
        pass


class MockPool:
    def __init__(self):
        self.min = 1
        self.max = 2
        self.busy = 0
        self.opened = 1
        self._conn = MockConnection()

    def acquire(self):
        return self._conn

    async def close(self):
        pass


# ---------------------------------------------------------------------------
# Mock services
# ---------------------------------------------------------------------------

def make_mock_session_store():
    svc = AsyncMock()
    now = _now_ms()
    session = Session(
        user_id="user-1",
        session_id="sess-1",
        messages=[Message(role="user", content="hello", timestamp=now)],
        summary="[Compacted 2 messages]",
        created_at=now,
        last_accessed=now,
        expires_at=now + 1000,
    )
    svc.list = AsyncMock(return_value=[session])
    svc.load = AsyncMock(return_value=session)
    svc.append = AsyncMock(return_value=None)
    svc.compact = AsyncMock(return_value=None)
    svc.delete = AsyncMock(return_value=2)
    return svc


def make_mock_policy_service():
    svc = AsyncMock()
    now = _now_ms()
    svc.get_policy = AsyncMock(side_effect=lambda user_id: Policy(
        user_id=user_id,
        allowed_capabilities=["orchestrator", "query"],
        request_budget=100,
        token_budget=2048,
        created_at=now,
        updated_at=now,
    ))
    svc.save_policy = AsyncMock(side_effect=lambda p: p.model_copy(update={"updated_at": now,
                                                                          "created_at": now}))
    svc.reset_rate_limit = AsyncMock(side_effect=lambda user_id: RateLimitCounter(
        user_id=user_id, window_start=now, count=0, expires_at=now + 1000,
    ))
    return svc


def make_mock_gateway():
    gw = AsyncMock()
    gw.handle_request_with_retry = AsyncMock(side_effect=lambda req, cb=None: QueryResponse(
        content="answer",
        request_id=req.request_id,
        success=True,
        metadata=ResponseMetadata(capability=req.capability or "orchestrator", duration_ms=5),
    ))
    return gw


def _set_state(app, settings, pool=None, store=None, session_store=None,
               policy_service=None, gateway=None):
    app.state.settings = settings
    app.state.pool = pool
    app.state.store = store
    app.state.session_store = session_store
    app.state.policy_service = policy_service
    app.state.identity_service = None
    app.state.inference_client = None
    app.state.gateway = gateway


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def settings():
    return make_settings()


@pytest.fixture
def settings_factory():
    return make_settings


@pytest.fixture
def store():
    return InMemoryKeyValueStore()


@pytest.fixture
def mock_pool():
    return MockPool()


@pytest_asyncio.fixture
async def app_no_services():
    """FastAPI app with nothing wired. Services unavailable (503)."""
    from turnstile_service.main import app

    _set_state(app, make_settings())
    yield app


@pytest_asyncio.fixture
async def app_with_mocks():
    """FastAPI app with all services mocked."""
    from turnstile_service.main import app

    _set_state(
        app,
        make_settings(),
        pool=MockPool(),
        store=InMemoryKeyValueStore(),
        session_store=make_mock_session_store(),
        policy_service=make_mock_policy_service(),
        gateway=make_mock_gateway(),
    )
    yield app


@pytest_asyncio.fixture
async def client_no_services(app_no_services):
    """AsyncClient hitting the app with no services."""
    transport = ASGITransport(app=app_no_services)
    async with AsyncClient(transport=transport, base_url="http://test") as c:
        yield c


@pytest_asyncio.fixture
async def client(app_with_mocks):
    """AsyncClient hitting the app with mocked services."""
    transport = ASGITransport(app=app_with_mocks)
    async with AsyncClient(transport=transport, base_url="http://test") as c:
        yield c
