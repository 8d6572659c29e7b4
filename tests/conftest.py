"""Pytest configuration and shared fixtures.

Organization:
    - Settings Fixtures: isolated settings instances
    - Database Fixtures: in-memory SQLite engine and session factory
    - Ledger Fixtures: TokenLedger and user factory
    - Realtime Fixtures: registry, hub, gateway and connection handles
    - Application Fixtures: FastAPI app wired through app.state, HTTP client
"""

from __future__ import annotations

import os
from collections.abc import AsyncGenerator, Callable
from typing import TYPE_CHECKING, Any

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import StaticPool

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

    from device_service.core.settings import AuthSettings, RealtimeSettings
    from device_service.features.auth.models import User
    from device_service.features.auth.service import TokenLedger
    from device_service.infra.realtime import ConnectionHandle, RealtimeHub

# Ensure tests run without external infrastructure
os.environ.setdefault("APP_ENVIRONMENT", "test")
os.environ.setdefault("AUTH_JWT_SECRET_KEY", "test-secret-key-with-at-least-32-bytes!!")
os.environ.setdefault("DB_ENABLED", "false")
os.environ.setdefault("DB_DATABASE_URL", "")
os.environ.setdefault("SCHEDULER_ENABLED", "false")
os.environ.setdefault("LOG_JSON_LOGS", "false")

TEST_SECRET = "test-secret-key-with-at-least-32-bytes!!"
TEST_PASSWORD = "correct-horse-battery"


# ============================================================================
# Settings Fixtures
# ============================================================================


@pytest.fixture
def auth_settings() -> AuthSettings:
    """Auth settings with a fixed signing secret and default policy."""
    from device_service.core.settings import AuthSettings

    return AuthSettings(jwt_secret_key=TEST_SECRET)


@pytest.fixture
def realtime_settings() -> RealtimeSettings:
    """Realtime settings with small queues so slow consumers are easy to provoke."""
    from device_service.core.settings import RealtimeSettings

    return RealtimeSettings(
        send_queue_size=8,
        replay_capacity=100,
        heartbeat_interval=30.0,
        max_connections=100,
        max_connections_per_user=5,
    )


# ============================================================================
# Database Fixtures
# ============================================================================


@pytest.fixture
async def db_engine() -> AsyncGenerator[AsyncEngine]:
    """In-memory SQLite engine shared by every session of one test.

    StaticPool keeps a single connection so all sessions see the same
    in-memory database.
    """
    from device_service.core.database import Base
    from device_service.features.auth import models  # noqa: F401

    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    try:
        yield engine
    finally:
        await engine.dispose()


@pytest.fixture
def session_factory(db_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    from device_service.infra.database import create_session_factory

    return create_session_factory(db_engine)


# ============================================================================
# Ledger Fixtures
# ============================================================================


@pytest.fixture
def ledger(session_factory: async_sessionmaker[AsyncSession], auth_settings: AuthSettings) -> TokenLedger:
    from device_service.features.auth.service import TokenLedger

    return TokenLedger(session_factory, auth_settings)


@pytest.fixture
def make_user(ledger: TokenLedger) -> Callable[..., Any]:
    """Factory registering users through the ledger.

    Example:
        async def test_login(make_user):
            user = await make_user("alice@example.com", role=UserRole.ADMIN)
    """
    from device_service.features.auth.models import UserRole

    async def _make(
        email: str = "user@example.com",
        password: str = TEST_PASSWORD,
        role: UserRole = UserRole.USER,
    ) -> User:
        return await ledger.register_user(email, password, name="Test User", role=role)

    return _make


@pytest.fixture
def password() -> str:
    """Password every user from make_user is registered with."""
    return TEST_PASSWORD


# ============================================================================
# Realtime Fixtures
# ============================================================================


@pytest.fixture
def hub(realtime_settings: RealtimeSettings) -> RealtimeHub:
    from device_service.infra.realtime import create_realtime_hub

    return create_realtime_hub(realtime_settings)


@pytest.fixture
def make_handle() -> Callable[..., ConnectionHandle]:
    """Factory for connection handles bound to the running loop.

    Must be called from inside a running event loop.
    """
    from device_service.infra.realtime import ConnectionHandle, TransportKind

    counter = iter(range(1, 1_000_000))

    def _make(
        user_id: str = "user-1",
        role: str = "user",
        *,
        transport: TransportKind = TransportKind.WEBSOCKET,
        token_id: str | None = None,
        queue_size: int = 8,
    ) -> ConnectionHandle:
        return ConnectionHandle(
            connection_id=f"conn-{next(counter)}",
            user_id=user_id,
            role=role,
            transport=transport,
            token_id=token_id,
            queue_size=queue_size,
        )

    return _make


# ============================================================================
# Application Fixtures
# ============================================================================


@pytest.fixture
def app(ledger: TokenLedger, hub: RealtimeHub, realtime_settings: RealtimeSettings):
    """FastAPI application with its components placed on app.state.

    The lifespan is not run; the fixtures stand in for what startup builds.
    """
    from device_service.app.main import create_app
    from device_service.features.realtime.gateway import RealtimeGateway

    application = create_app()
    application.state.token_ledger = ledger
    application.state.realtime_hub = hub
    application.state.realtime_gateway = RealtimeGateway(hub, ledger, realtime_settings)
    ledger.add_revocation_listener(hub.on_token_revoked)
    return application


@pytest.fixture
async def client(app) -> AsyncGenerator[AsyncClient]:
    """Async HTTP client bound to the app through ASGITransport."""
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac


@pytest.fixture
def bearer() -> Callable[[str], dict[str, str]]:
    def _headers(token: str) -> dict[str, str]:
        return {"Authorization": f"Bearer {token}"}

    return _headers
