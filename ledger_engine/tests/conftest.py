"""Shared fixtures for ledger engine tests.

Every test gets its own file-backed SQLite database under ``tmp_path`` so
that separate connections (one per concurrent consume attempt) see the same
data, exactly as they would against PostgreSQL.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest
import pytest_asyncio
from ledger_engine.models.ledger import PurchaseSource, PurchaseStatus
from ledger_engine.state.repository import PurchaseRepository
from ledger_engine.state.sqlite_adapter import create_local_tables, get_local_engine
from ledger_engine.state.tables import PurchaseTable
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

OWNER = "user-123"


@pytest_asyncio.fixture
async def engine(tmp_path: Path) -> AsyncEngine:
    eng = get_local_engine(tmp_path / "ledger.db")
    await create_local_tables(eng)
    yield eng
    await eng.dispose()


@pytest.fixture
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, expire_on_commit=False)


@pytest_asyncio.fixture
async def async_session(session_factory: async_sessionmaker[AsyncSession]) -> AsyncSession:
    async with session_factory() as session:
        yield session


PurchaseFactory = Callable[..., Awaitable[PurchaseTable]]


@pytest.fixture
def make_purchase(session_factory: async_sessionmaker[AsyncSession]) -> PurchaseFactory:
    """Return a coroutine that commits a purchase and returns the row.

    ``age_minutes`` back-dates ``created_at`` so FIFO order can be pinned;
    ``remaining`` lowers ``credits_remaining`` below ``credits``.
    """

    async def _make(
        credits: int,
        *,
        owner_id: str = OWNER,
        remaining: int | None = None,
        age_minutes: int = 0,
        expires_in_days: float | None = 30,
        status: PurchaseStatus = PurchaseStatus.COMPLETED,
        source: PurchaseSource = PurchaseSource.SUBSCRIPTION,
        subscription_id: str | None = None,
    ) -> PurchaseTable:
        now = datetime.now(UTC)
        async with session_factory() as session, session.begin():
            row = await PurchaseRepository(session).create(
                owner_id,
                credits,
                source,
                expires_at=None if expires_in_days is None else now + timedelta(days=expires_in_days),
                status=status,
                subscription_id=subscription_id,
                created_at=now - timedelta(minutes=age_minutes),
            )
            if remaining is not None:
                row.credits_remaining = remaining
        return row

    return _make


@pytest.fixture
def get_remaining(session_factory: async_sessionmaker[AsyncSession]) -> Callable[[str], Awaitable[int]]:
    """Return a coroutine reading a purchase's current ``credits_remaining``."""

    async def _get(purchase_id: str) -> int:
        async with session_factory() as session:
            row = await PurchaseRepository(session).get(purchase_id)
            assert row is not None
            return row.credits_remaining

    return _get
