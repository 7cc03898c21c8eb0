"""
LockBlip Ghost - Test Fixtures
==============================

Shared pytest fixtures for all tests.
"""

import os

os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("PIN_HASH_ROUNDS", "4")
os.environ.setdefault("REAPER_ENABLED", "false")

import json
from collections.abc import AsyncGenerator, Callable
from contextlib import asynccontextmanager
from typing import Any, Optional

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool
from starlette.websockets import WebSocketState

from lockblip.api.deps import create_access_token
from lockblip.api.ghost import get_session_factory
from lockblip.api.main import app
from lockblip.core.database import Base, get_db
from lockblip.core.ghost.audit import AccessAuditLog, SessionFactory, get_audit_log
from lockblip.core.ghost.channels import GhostChannelHub, get_channel_hub


# ==========================================================================
# Test Database Setup
# ==========================================================================

# Use in-memory SQLite for tests (fast)
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

test_engine = create_async_engine(
    TEST_DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)

TestingSessionLocal = async_sessionmaker(
    bind=test_engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autoflush=False,
)


# ==========================================================================
# Database Fixtures
# ==========================================================================

@pytest_asyncio.fixture(scope="function")
async def db_session() -> AsyncGenerator[AsyncSession, None]:
    """
    Provide a clean database session for each test.

    Creates all tables before test, drops after.
    """
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    async with TestingSessionLocal() as session:
        yield session

    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


@pytest.fixture
def session_factory(db_session: AsyncSession) -> SessionFactory:
    """
    Session factory for background workers that reuses the test session.

    The in-memory database lives on a single connection, so workers share
    the test's session instead of opening their own.
    """
    @asynccontextmanager
    async def factory() -> AsyncGenerator[AsyncSession, None]:
        yield db_session

    return factory


@pytest.fixture
def audit_log(session_factory: SessionFactory) -> AccessAuditLog:
    return AccessAuditLog(session_factory)


@pytest.fixture
def hub() -> GhostChannelHub:
    return GhostChannelHub()


@pytest_asyncio.fixture(scope="function")
async def client(
    db_session: AsyncSession,
    audit_log: AccessAuditLog,
    hub: GhostChannelHub,
    session_factory: SessionFactory,
) -> AsyncGenerator[AsyncClient, None]:
    """
    Provide test HTTP client with database, audit and hub overrides.
    """
    async def override_get_db() -> AsyncGenerator[AsyncSession, None]:
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_audit_log] = lambda: audit_log
    app.dependency_overrides[get_channel_hub] = lambda: hub
    app.dependency_overrides[get_session_factory] = lambda: session_factory

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()


# ==========================================================================
# Auth Fixtures
# ==========================================================================

def bearer(username: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {create_access_token(username)}"}


@pytest.fixture
def alice_headers() -> dict[str, str]:
    return bearer("alice")


@pytest.fixture
def bob_headers() -> dict[str, str]:
    return bearer("bob")


@pytest.fixture
def carol_headers() -> dict[str, str]:
    return bearer("carol")


@pytest.fixture
def unlock_ghost(client: AsyncClient) -> Callable[..., Any]:
    """
    Set up and unlock Ghost Mode for a user.

    Returns headers carrying both the bearer and the ghost session token.
    """
    async def _unlock(headers: dict[str, str], pin: str = "1234") -> dict[str, str]:
        response = await client.post("/api/v1/ghost/setup", json={"pin": pin}, headers=headers)
        assert response.status_code in (201, 409)
        response = await client.post("/api/v1/ghost/unlock", json={"pin": pin}, headers=headers)
        assert response.status_code == 200
        return {**headers, "X-Ghost-Session": response.json()["sessionToken"]}

    return _unlock


# ==========================================================================
# Fake WebSocket
# ==========================================================================

class FakeWebSocket:
    """Collects frames the hub sends; enough of the WebSocket API for the hub."""

    def __init__(self, fail: bool = False):
        self.client_state = WebSocketState.CONNECTING
        self.accepted = False
        self.sent: list[str] = []
        self.fail = fail

    async def accept(self) -> None:
        self.accepted = True
        self.client_state = WebSocketState.CONNECTED

    async def send_text(self, data: str) -> None:
        if self.fail:
            raise RuntimeError("socket closed")
        self.sent.append(data)

    def frames(self, type_: Optional[str] = None) -> list[dict]:
        parsed = [json.loads(raw) for raw in self.sent]
        if type_ is None:
            return parsed
        return [frame for frame in parsed if frame["type"] == type_]


@pytest.fixture
def fake_websocket() -> Callable[..., FakeWebSocket]:
    return FakeWebSocket
