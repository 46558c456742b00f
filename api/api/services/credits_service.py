"""Read-side views over an owner's purchases, usage and subscription."""

from __future__ import annotations

import logging
import math
from collections.abc import Callable
from datetime import UTC, datetime

from ledger_engine.models.ledger import AccountTier
from ledger_engine.state.repository import (
    AccountRepository,
    PurchaseRepository,
    SubscriptionRepository,
    UsageRecordRepository,
)
from ledger_engine.state.tables import PurchaseTable, SubscriptionTable
from sqlalchemy.ext.asyncio import AsyncSession

from api.schemas import (
    AccountResponse,
    CreditsSummaryResponse,
    PurchaseResponse,
    SubscriptionSummary,
)

logger = logging.getLogger(__name__)

RECENT_PURCHASES = 10
_SECONDS_PER_DAY = 86_400


def _purchase(row: PurchaseTable) -> PurchaseResponse:
    return PurchaseResponse(
        id=row.id,
        credits_granted=row.credits_granted,
        credits_remaining=row.credits_remaining,
        source=row.source,
        status=row.status,
        subscription_id=row.subscription_id,
        expires_at=row.expires_at,
        created_at=row.created_at,
    )


def _subscription(row: SubscriptionTable) -> SubscriptionSummary:
    return SubscriptionSummary(
        id=row.id,
        status=row.status,
        current_period_start=row.current_period_start,
        current_period_end=row.current_period_end,
        credits_per_period=row.credits_per_period,
        cancel_at_period_end=row.cancel_at_period_end,
    )


class CreditsService:
    """Summaries for a single owner.

    Parameters
    ----------
    session:
        Active database session.
    owner_id:
        The authenticated owner.
    clock:
        Returns the current UTC time; overridable for tests.
    """

    def __init__(
        self,
        session: AsyncSession,
        *,
        owner_id: str,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._session = session
        self._owner_id = owner_id
        self._clock = clock or (lambda: datetime.now(UTC))

    async def balance(self) -> int:
        return await PurchaseRepository(self._session).sum_eligible(self._owner_id, self._clock())

    async def summary(self) -> CreditsSummaryResponse:
        """Build the credits overview.

        ``active_purchases`` are the eligible purchases ordered by soonest
        expiry; ``days_until_expiry`` counts whole days (rounded up) until
        the first of them expires.
        """
        now = self._clock()
        purchases = PurchaseRepository(self._session)
        active = await purchases.list_active_by_expiry(self._owner_id, now)
        recent = await purchases.list_for_owner(self._owner_id, limit=RECENT_PURCHASES)
        total_usage = await UsageRecordRepository(self._session).count_for_owner(self._owner_id)

        next_expiry = next((p.expires_at for p in active if p.expires_at is not None), None)
        days_until_expiry = None
        if next_expiry is not None:
            days_until_expiry = max(math.ceil((next_expiry - now).total_seconds() / _SECONDS_PER_DAY), 0)

        return CreditsSummaryResponse(
            available_credits=sum(p.credits_remaining for p in active),
            active_purchases=[_purchase(p) for p in active],
            recent_purchases=[_purchase(p) for p in recent],
            total_usage=total_usage,
            days_until_expiry=days_until_expiry,
            next_expiry_date=next_expiry,
        )

    async def account(self, email: str | None = None) -> AccountResponse:
        """Return tier, active subscription and balance, creating the account row if absent."""
        now = self._clock()
        account = await AccountRepository(self._session).ensure(self._owner_id, email)
        active = await SubscriptionRepository(self._session).get_active_for_owner(self._owner_id, now)
        return AccountResponse(
            owner_id=self._owner_id,
            email=account.email or email,
            tier=account.tier or AccountTier.FREE.value,
            available_credits=await self.balance(),
            subscription=_subscription(active) if active is not None else None,
        )
