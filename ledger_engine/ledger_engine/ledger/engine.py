"""Ledger engine: available balance and atomic FIFO credit consumption.

Consumption uses optimistic concurrency.  Each attempt runs in its own
transaction: it reads the owner's eligible purchases oldest-first, plans how
many credits to take from each, and issues one conditional decrement per
purchase (``... WHERE id = :id AND credits_remaining = :read_value``).  If any
decrement matches no row, another writer got there first; the whole attempt
rolls back, so nothing from it is consumed, and the attempt is retried after
a short backoff.  After the bounded number of retries the call fails with
:class:`~ledger_engine.errors.ConflictError`.

A CAS miss only happens when some other consume committed in between, so
every miss corresponds to progress elsewhere.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from datetime import UTC, datetime

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ledger_engine.errors import ConflictError, InsufficientCreditsError, StoreUnavailableError
from ledger_engine.ledger.retry import RetryConfig, async_retry_with_backoff
from ledger_engine.models.ledger import Allocation, ConsumeResult
from ledger_engine.state.repository import PurchaseRepository
from ledger_engine.state.tables import PurchaseTable

logger = logging.getLogger(__name__)


class _CasMiss(Exception):
    """A purchase row changed between the read and the conditional write."""

    def __init__(self, purchase_id: str) -> None:
        self.purchase_id = purchase_id
        super().__init__(f"purchase {purchase_id} changed concurrently")


def _utcnow() -> datetime:
    return datetime.now(UTC)


def plan_fifo(purchases: Sequence[PurchaseTable], credits_needed: int) -> list[tuple[PurchaseTable, int]]:
    """Split *credits_needed* across *purchases* in the order given.

    *purchases* must already be sorted oldest-first.  Returns
    ``(purchase, credits_to_take)`` pairs covering exactly
    *credits_needed*; raises ``ValueError`` if the purchases cannot cover
    it.
    """
    plan: list[tuple[PurchaseTable, int]] = []
    outstanding = credits_needed
    for purchase in purchases:
        if outstanding == 0:
            break
        take = min(purchase.credits_remaining, outstanding)
        if take <= 0:
            continue
        plan.append((purchase, take))
        outstanding -= take
    if outstanding:
        raise ValueError(f"Purchases cover {credits_needed - outstanding} of {credits_needed} credits")
    return plan


class LedgerEngine:
    """Balance queries and race-safe deduction for a single owner's purchases.

    Parameters
    ----------
    session_factory:
        Factory producing sessions against the purchase store.  Every
        consume attempt opens its own transaction.
    retry_config:
        Bounds on the compare-and-swap retry loop.  Defaults to three
        retries with a 50 ms base delay.
    clock:
        Returns the current UTC time; overridable for tests.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        retry_config: RetryConfig | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._retry = retry_config or RetryConfig()
        self._clock = clock or _utcnow

    async def available_balance(self, owner_id: str) -> int:
        """Sum ``credits_remaining`` over the owner's completed, unexpired purchases."""
        try:
            async with self._session_factory() as session:
                return await PurchaseRepository(session).sum_eligible(owner_id, self._clock())
        except SQLAlchemyError as exc:
            logger.error("Balance read failed for owner=%s", owner_id, exc_info=True)
            raise StoreUnavailableError("available_balance") from exc

    async def reserve_and_consume(self, owner_id: str, credits_needed: int) -> ConsumeResult:
        """Atomically deduct *credits_needed* from the owner's purchases, oldest first.

        The deduction either commits in full or not at all.  A batch of N
        billable units is one call with ``credits_needed=N``.

        Raises
        ------
        InsufficientCreditsError
            The eligible balance is below *credits_needed*.  Carries the
            balance seen by the attempt.
        ConflictError
            Concurrent writers invalidated every attempt.
        StoreUnavailableError
            The store failed; never reported as insufficient credits.
        """
        if credits_needed <= 0:
            raise ValueError(f"credits_needed must be positive, got {credits_needed}")

        attempts = 0

        async def _attempt() -> ConsumeResult:
            nonlocal attempts
            attempts += 1
            return await self._consume_once(owner_id, credits_needed, attempts)

        try:
            result = await async_retry_with_backoff(_attempt, self._retry, retryable_exceptions=(_CasMiss,))
        except _CasMiss as exc:
            logger.warning(
                "Credit deduction conflicted owner=%s credits=%d attempts=%d last_purchase=%s",
                owner_id,
                credits_needed,
                attempts,
                exc.purchase_id,
            )
            raise ConflictError(owner_id, attempts) from None
        except SQLAlchemyError as exc:
            logger.error("Credit deduction failed owner=%s credits=%d", owner_id, credits_needed, exc_info=True)
            raise StoreUnavailableError("reserve_and_consume") from exc

        logger.info(
            "Consumed %d credit(s) owner=%s purchases=%s attempts=%d",
            credits_needed,
            owner_id,
            [a.purchase_id for a in result.allocations],
            result.attempts,
        )
        return result

    async def _consume_once(self, owner_id: str, credits_needed: int, attempt: int) -> ConsumeResult:
        now = self._clock()
        async with self._session_factory() as session, session.begin():
            repo = PurchaseRepository(session)
            purchases = await repo.list_eligible(owner_id, now)
            available = sum(p.credits_remaining for p in purchases)
            if available < credits_needed:
                raise InsufficientCreditsError(owner_id, credits_needed, available)

            plan = plan_fifo(purchases, credits_needed)
            for purchase, take in plan:
                if not await repo.conditional_decrement(purchase.id, purchase.credits_remaining, take):
                    raise _CasMiss(purchase.id)

        allocations = [
            Allocation(purchase_id=p.id, subscription_id=p.subscription_id, credits=take) for p, take in plan
        ]
        first = allocations[0]
        return ConsumeResult(
            owner_id=owner_id,
            credits_consumed=credits_needed,
            purchase_id=first.purchase_id,
            subscription_id=first.subscription_id,
            allocations=allocations,
            attempts=attempt,
        )
