"""SQLite backend for local runs and tests.

The ledger uses the same ORM tables and the same conditional-decrement
queries on SQLite as on PostgreSQL.  Two things differ:

* SQLite has a single writer, so concurrent deductions queue on the
  database lock (bounded by ``_BUSY_TIMEOUT_SECONDS``) rather than racing on
  row values.  The compare-and-swap still guards against stale reads taken
  before the lock was acquired.
* Tables come from ``create_all()``; Alembic is only used against PostgreSQL.
"""

from __future__ import annotations

import logging
from pathlib import Path

from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

logger = logging.getLogger(__name__)

# Seconds a writer waits on the SQLite lock before raising "database is locked".
_BUSY_TIMEOUT_SECONDS = 30

_PRAGMAS = (
    "PRAGMA journal_mode=WAL",
    "PRAGMA foreign_keys=ON",
    "PRAGMA synchronous=NORMAL",
)


def get_local_engine(db_path: Path | str = ".ledger/ledger.db") -> AsyncEngine:
    """Create an aiosqlite engine for *db_path*.

    Parameters
    ----------
    db_path:
        Database file; missing parent directories are created.  Pass
        ``":memory:"`` for a throwaway in-memory store.
    """
    if db_path == ":memory:":
        url = "sqlite+aiosqlite:///:memory:"
    else:
        path = Path(db_path)
        path.parent.mkdir(parents=True, exist_ok=True)
        url = f"sqlite+aiosqlite:///{path}"

    engine = create_async_engine(
        url,
        connect_args={"check_same_thread": False, "timeout": _BUSY_TIMEOUT_SECONDS},
    )

    @event.listens_for(engine.sync_engine, "connect")
    def _set_sqlite_pragmas(dbapi_conn: object, _: object) -> None:
        cursor = dbapi_conn.cursor()  # type: ignore[attr-defined]
        for pragma in _PRAGMAS:
            cursor.execute(pragma)
        cursor.close()

    logger.info("Created SQLite engine: %s", url)
    return engine


async def create_local_tables(engine: AsyncEngine) -> None:
    """Create the ledger tables if they are missing."""
    from ledger_engine.state.tables import Base

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    logger.info("SQLite ledger tables created/verified")
