"""Async engine construction for the ledger store.

The URL scheme picks the backend:

- ``postgresql+asyncpg://`` gives a pooled PostgreSQL engine with server-side
  statement and lock timeouts, so a stuck deduction surfaces as a store
  error instead of hanging the request.
- ``sqlite+aiosqlite://`` delegates to :mod:`ledger_engine.state.sqlite_adapter`.
"""

from __future__ import annotations

import logging

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

logger = logging.getLogger(__name__)

# Server-side limits for PostgreSQL sessions, in milliseconds.
_STATEMENT_TIMEOUT_MS = 30_000
_LOCK_TIMEOUT_MS = 10_000


def get_engine(
    database_url: str,
    pool_size: int = 10,
    max_overflow: int = 20,
) -> AsyncEngine:
    """Create an async engine for *database_url*.

    Parameters
    ----------
    database_url:
        ``postgresql+asyncpg://...`` or ``sqlite+aiosqlite:///path``.  A
        SQLite URL without a path opens an in-memory database.
    pool_size:
        Persistent PostgreSQL connections (ignored for SQLite).
    max_overflow:
        Extra PostgreSQL connections allowed under load (ignored for SQLite).
    """
    if database_url.startswith("sqlite"):
        from ledger_engine.state.sqlite_adapter import get_local_engine

        _, _, db_path = database_url.partition("///")
        return get_local_engine(db_path or ":memory:")

    engine = create_async_engine(
        database_url,
        pool_size=pool_size,
        max_overflow=max_overflow,
        pool_pre_ping=True,
        pool_recycle=3600,
        pool_timeout=10,
        connect_args={
            "server_settings": {
                "statement_timeout": str(_STATEMENT_TIMEOUT_MS),
                "lock_timeout": str(_LOCK_TIMEOUT_MS),
            }
        },
    )
    logger.info("Created PostgreSQL engine pool_size=%d max_overflow=%d", pool_size, max_overflow)
    return engine


def get_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Return a session factory bound to *engine*.

    ``expire_on_commit`` is off so rows returned from a committed
    transaction (purchases, subscriptions) stay readable by the caller.
    """
    return async_sessionmaker(engine, expire_on_commit=False)
