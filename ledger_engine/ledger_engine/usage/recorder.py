"""Append-only usage audit trail.

Usage rows are written after the credit deduction has committed, in their
own transaction.  A failed write is logged and dropped: the deduction is the
financial record, the usage row is audit only, so nothing here can reverse
or block it.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ledger_engine.state.repository import UsageRecordRepository

logger = logging.getLogger(__name__)

REQUEST_EXCERPT_CHARS = 100
RESPONSE_EXCERPT_CHARS = 200


def _excerpt(text: str | None, limit: int) -> str | None:
    if not text:
        return None
    return text[:limit]


class UsageRecorder:
    """Fire-and-forget writer for ``usage_records``.

    Parameters
    ----------
    session_factory:
        An async session factory for database access.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory
        self._pending: set[asyncio.Task[bool]] = set()

    async def append(
        self,
        owner_id: str,
        credits_used: int,
        *,
        purchase_id: str | None = None,
        subscription_id: str | None = None,
        request_excerpt: str | None = None,
        response_excerpt: str | None = None,
        used_own_key: bool = False,
    ) -> bool:
        """Write one usage row.  Returns ``False`` (after logging) on any failure."""
        try:
            async with self._session_factory() as session, session.begin():
                await UsageRecordRepository(session).append(
                    owner_id,
                    credits_used,
                    purchase_id=purchase_id,
                    subscription_id=subscription_id,
                    request_excerpt=_excerpt(request_excerpt, REQUEST_EXCERPT_CHARS),
                    response_excerpt=_excerpt(response_excerpt, RESPONSE_EXCERPT_CHARS),
                    used_own_key=used_own_key,
                )
        except Exception:
            logger.warning(
                "Failed to record usage owner=%s purchase=%s credits=%d",
                owner_id,
                purchase_id,
                credits_used,
                exc_info=True,
            )
            return False
        return True

    def schedule(self, owner_id: str, credits_used: int, **kwargs: Any) -> asyncio.Task[bool]:
        """Run :meth:`append` in the background on the running loop."""
        task = asyncio.get_running_loop().create_task(self.append(owner_id, credits_used, **kwargs))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def drain(self) -> None:
        """Wait for scheduled writes to finish (used on shutdown)."""
        if self._pending:
            await asyncio.gather(*self._pending, return_exceptions=True)
