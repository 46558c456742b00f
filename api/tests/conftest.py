"""Shared fixtures for ledger API tests.

Routers run against a real file-backed SQLite ledger so that credit
deductions, subscription events and usage rows go through the same code as
production.  Only the compute endpoint is mocked.
"""

from __future__ import annotations

import os
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime, timedelta
from pathlib import Path
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from pydantic import SecretStr

# Set JWT_SECRET env var BEFORE importing application modules so the
# module-level app picks up a deterministic secret in dev mode instead of
# generating a random one.
_TEST_JWT_SECRET = "test-secret-key-for-ledger-tests"
os.environ.setdefault("JWT_SECRET", _TEST_JWT_SECRET)

from api.config import APISettings
from api.dependencies import (
    get_compute_client,
    get_db_session,
    get_session_factory,
    get_settings,
    get_usage_recorder,
)
from api.main import create_app
from api.security import TokenManager
from api.services.compute_client import ComputeClient, ComputeResult
from ledger_engine.models.ledger import PurchaseSource
from ledger_engine.state.repository import PurchaseRepository
from ledger_engine.state.sqlite_adapter import create_local_tables, get_local_engine
from ledger_engine.state.tables import PurchaseTable
from ledger_engine.usage.recorder import UsageRecorder
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

OWNER = "user-123"
OTHER_OWNER = "user-456"
WEBHOOK_SECRET = "whsec_test"
COUPON = "WELCOME2026"

# 1x1 transparent PNG.
PNG_DATA_URL = (
    "data:image/png;base64,"
    "iVBORw0KGgoAAAANSUhEUgAAAAEAAAABCAQAAAC1HAwCAAAAC0lEQVR42mNkYAAAAAYAAjCB0C8AAAAASUVORK5CYII="
)

# ---------------------------------------------------------------------------
# Dev auth tokens
# ---------------------------------------------------------------------------

_TOKENS = TokenManager(SecretStr(_TEST_JWT_SECRET))


def _make_dev_token(sub: str = OWNER, *, email: str | None = "owner@example.com", ttl_seconds: int = 3600) -> str:
    """Return a development token signed with the test secret."""
    return _TOKENS.generate_token(sub, email=email, ttl_seconds=ttl_seconds)


def _auth_headers(sub: str = OWNER) -> dict[str, str]:
    return {"Authorization": f"Bearer {_make_dev_token(sub)}"}


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------


@pytest.fixture()
def test_settings(tmp_path: Path) -> APISettings:
    """Return a settings object suitable for testing."""
    return APISettings(
        debug=True,
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'api.db'}",
        platform_env="dev",
        cors_origins=["http://localhost:3000"],
        rate_limit_enabled=False,
        auth_secret=SecretStr(_TEST_JWT_SECRET),
        stripe_secret_key=SecretStr("sk_test_123"),
        stripe_webhook_secret=SecretStr(WEBHOOK_SECRET),
        coupon_code=COUPON,
        consume_base_delay=0.001,
        consume_max_delay=0.01,
    )


# ---------------------------------------------------------------------------
# Ledger store
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture()
async def engine(tmp_path: Path) -> AsyncEngine:
    eng = get_local_engine(tmp_path / "api.db")
    await create_local_tables(eng)
    yield eng
    await eng.dispose()


@pytest.fixture()
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, expire_on_commit=False)


GrantFactory = Callable[..., Awaitable[PurchaseTable]]


@pytest.fixture()
def grant(session_factory: async_sessionmaker[AsyncSession]) -> GrantFactory:
    """Return a coroutine that commits a completed purchase for an owner."""

    async def _grant(
        credits: int,
        *,
        owner_id: str = OWNER,
        expires_in_days: float | None = 30,
        age_minutes: int = 0,
        source: PurchaseSource = PurchaseSource.TOPUP,
    ) -> PurchaseTable:
        now = datetime.now(UTC)
        async with session_factory() as session, session.begin():
            return await PurchaseRepository(session).create(
                owner_id,
                credits,
                source,
                expires_at=None if expires_in_days is None else now + timedelta(days=expires_in_days),
                created_at=now - timedelta(minutes=age_minutes),
            )

    return _grant


# ---------------------------------------------------------------------------
# Mock compute client
# ---------------------------------------------------------------------------


@pytest.fixture()
def mock_compute() -> AsyncMock:
    """Return a mock ComputeClient whose analyze() always succeeds."""
    client = AsyncMock(spec=ComputeClient)
    client.analyze = AsyncMock(return_value=ComputeResult(text="Nice shot!", tokens_used=42, request_id="chatcmpl-1"))
    client.health_check = AsyncMock(return_value=True)
    client.close = AsyncMock()
    return client


# ---------------------------------------------------------------------------
# FastAPI app and client
# ---------------------------------------------------------------------------


@pytest.fixture()
def app(
    test_settings: APISettings,
    session_factory: async_sessionmaker[AsyncSession],
    mock_compute: AsyncMock,
):
    """Create a FastAPI app wired to the test ledger and mock compute client."""
    application = create_app(test_settings)
    recorder = UsageRecorder(session_factory)

    async def _override_session():
        async with session_factory() as session:
            yield session
            await session.commit()

    application.dependency_overrides[get_settings] = lambda: test_settings
    application.dependency_overrides[get_session_factory] = lambda: session_factory
    application.dependency_overrides[get_db_session] = _override_session
    application.dependency_overrides[get_compute_client] = lambda: mock_compute
    application.dependency_overrides[get_usage_recorder] = lambda: recorder
    return application


@pytest_asyncio.fixture()
async def client(app) -> AsyncClient:
    """Yield an async httpx client authenticated as :data:`OWNER`."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test", headers=_auth_headers()) as ac:
        yield ac


@pytest_asyncio.fixture()
async def anon_client(app) -> AsyncClient:
    """Yield an async httpx client with no Authorization header."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


@pytest.fixture()
def make_token() -> Callable[..., str]:
    """Return the dev-token factory (``make_token(sub, email=..., ttl_seconds=...)``)."""
    return _make_dev_token


@pytest.fixture()
def headers_for() -> Callable[[str], dict[str, str]]:
    """Return a function building Authorization headers for another owner."""
    return _auth_headers


@pytest.fixture()
def png_data_url() -> str:
    return PNG_DATA_URL
