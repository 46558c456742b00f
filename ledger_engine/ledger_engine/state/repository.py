"""Repository classes providing CRUD access to the ledger store.

Each repository takes an ``AsyncSession`` at construction time and operates
within the caller's transaction boundary.  All writes call ``session.flush()``
so that generated defaults are populated; the caller is responsible for calling
``session.commit()``, usually via ``async with session.begin():``.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime, timedelta
from decimal import Decimal
from typing import Any

from sqlalchemy import ColumnElement, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ledger_engine.models.ledger import AccountTier, PurchaseSource, PurchaseStatus
from ledger_engine.models.subscription import SubscriptionStatus
from ledger_engine.state.tables import (
    AccountTable,
    PurchaseTable,
    SubscriptionEventTable,
    SubscriptionTable,
    UsageRecordTable,
)

logger = logging.getLogger(__name__)


async def _dialect_upsert_nothing(
    session: AsyncSession,
    table: Any,
    values: dict[str, Any],
    index_elements: list[str],
) -> Any:
    """Dialect-aware insert with ``ON CONFLICT DO NOTHING``.

    Parameters
    ----------
    session:
        The active async session.
    table:
        The SQLAlchemy table class to insert into.
    values:
        Column-value mapping for the row to insert.
    index_elements:
        Column names forming the unique constraint for conflict detection.

    Returns
    -------
    The execution result from ``session.execute()``.  ``rowcount`` is 0 when
    the row already existed.
    """
    bind = session.get_bind()
    dialect_name = getattr(getattr(bind, "dialect", None), "name", "")

    stmt: Any
    if "postgresql" in str(dialect_name):
        from sqlalchemy.dialects.postgresql import insert as _pg_insert

        stmt = _pg_insert(table).values(**values)
    else:
        from sqlalchemy.dialects.sqlite import insert as _sqlite_insert

        stmt = _sqlite_insert(table).values(**values)
    stmt = stmt.on_conflict_do_nothing(index_elements=index_elements)
    return await session.execute(stmt)


def _eligible(now: datetime) -> list[ColumnElement[bool]]:
    """Predicates selecting purchases that can still be consumed at *now*."""
    return [
        PurchaseTable.status == PurchaseStatus.COMPLETED.value,
        PurchaseTable.credits_remaining > 0,
        or_(PurchaseTable.expires_at.is_(None), PurchaseTable.expires_at > now),
    ]


# ---------------------------------------------------------------------------
# AccountRepository
# ---------------------------------------------------------------------------


class AccountRepository:
    """Owner rows and their tier."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get(self, owner_id: str) -> AccountTable | None:
        stmt = select(AccountTable).where(AccountTable.owner_id == owner_id)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def ensure(self, owner_id: str, email: str | None = None) -> AccountTable:
        """Return the account for *owner_id*, creating a free-tier row if absent.

        The insert is ``ON CONFLICT DO NOTHING`` so concurrent first requests
        for the same owner cannot fail on the primary key.
        """
        now = datetime.now(UTC)
        await _dialect_upsert_nothing(
            self._session,
            AccountTable,
            values={
                "owner_id": owner_id,
                "email": email,
                "tier": AccountTier.FREE.value,
                "created_at": now,
                "updated_at": now,
            },
            index_elements=["owner_id"],
        )
        await self._session.flush()
        account = await self.get(owner_id)
        assert account is not None  # noqa: S101
        return account

    async def set_tier(self, owner_id: str, tier: AccountTier) -> None:
        stmt = (
            update(AccountTable)
            .where(AccountTable.owner_id == owner_id)
            .values(tier=tier.value, updated_at=datetime.now(UTC))
            .execution_options(synchronize_session=False)
        )
        await self._session.execute(stmt)
        await self._session.flush()

    async def set_customer_ref(self, owner_id: str, external_customer_ref: str) -> None:
        stmt = (
            update(AccountTable)
            .where(AccountTable.owner_id == owner_id)
            .values(external_customer_ref=external_customer_ref, updated_at=datetime.now(UTC))
            .execution_options(synchronize_session=False)
        )
        await self._session.execute(stmt)
        await self._session.flush()


# ---------------------------------------------------------------------------
# PurchaseRepository
# ---------------------------------------------------------------------------


class PurchaseRepository:
    """Persistence for credit grants.

    ``conditional_decrement`` is the compare-and-swap primitive the ledger
    engine builds on; nothing else writes ``credits_remaining``.
    """

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create(
        self,
        owner_id: str,
        credits: int,
        source: PurchaseSource,
        *,
        expires_at: datetime | None,
        status: PurchaseStatus = PurchaseStatus.COMPLETED,
        subscription_id: str | None = None,
        amount: Decimal | None = None,
        currency: str | None = None,
        external_payment_ref: str | None = None,
        external_checkout_ref: str | None = None,
        created_at: datetime | None = None,
    ) -> PurchaseTable:
        """Insert a purchase granting *credits* with the full amount remaining."""
        if credits <= 0:
            raise ValueError(f"Purchase must grant a positive number of credits, got {credits}")
        row = PurchaseTable(
            owner_id=owner_id,
            credits_granted=credits,
            credits_remaining=credits,
            source=source.value,
            status=status.value,
            expires_at=expires_at,
            subscription_id=subscription_id,
            amount=amount,
            currency=currency.lower() if currency else None,
            external_payment_ref=external_payment_ref,
            external_checkout_ref=external_checkout_ref,
            created_at=created_at or datetime.now(UTC),
        )
        self._session.add(row)
        await self._session.flush()
        return row

    async def get(self, purchase_id: str) -> PurchaseTable | None:
        stmt = select(PurchaseTable).where(PurchaseTable.id == purchase_id)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def list_eligible(self, owner_id: str, now: datetime | None = None) -> list[PurchaseTable]:
        """Return consumable purchases for *owner_id*, oldest first (FIFO)."""
        now = now or datetime.now(UTC)
        stmt = (
            select(PurchaseTable)
            .where(PurchaseTable.owner_id == owner_id, *_eligible(now))
            .order_by(PurchaseTable.created_at.asc(), PurchaseTable.id.asc())
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def list_active_by_expiry(self, owner_id: str, now: datetime | None = None) -> list[PurchaseTable]:
        """Return consumable purchases ordered by soonest expiry (no-expiry last)."""
        now = now or datetime.now(UTC)
        stmt = (
            select(PurchaseTable)
            .where(PurchaseTable.owner_id == owner_id, *_eligible(now))
            .order_by(
                PurchaseTable.expires_at.is_(None),
                PurchaseTable.expires_at.asc(),
                PurchaseTable.created_at.asc(),
            )
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def sum_eligible(self, owner_id: str, now: datetime | None = None) -> int:
        """Aggregate ``credits_remaining`` over eligible purchases in SQL."""
        now = now or datetime.now(UTC)
        stmt = select(func.coalesce(func.sum(PurchaseTable.credits_remaining), 0)).where(
            PurchaseTable.owner_id == owner_id, *_eligible(now)
        )
        result = await self._session.execute(stmt)
        return int(result.scalar_one())

    async def list_for_owner(self, owner_id: str, limit: int | None = None) -> list[PurchaseTable]:
        """Return every purchase for *owner_id*, newest first."""
        stmt = (
            select(PurchaseTable)
            .where(PurchaseTable.owner_id == owner_id)
            .order_by(PurchaseTable.created_at.desc(), PurchaseTable.id.desc())
        )
        if limit is not None:
            stmt = stmt.limit(limit)
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def find_by_payment_ref(self, external_payment_ref: str) -> PurchaseTable | None:
        stmt = select(PurchaseTable).where(PurchaseTable.external_payment_ref == external_payment_ref).limit(1)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def find_by_checkout_ref(self, external_checkout_ref: str) -> PurchaseTable | None:
        stmt = select(PurchaseTable).where(PurchaseTable.external_checkout_ref == external_checkout_ref).limit(1)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def conditional_decrement(self, purchase_id: str, expected_remaining: int, delta: int) -> bool:
        """Subtract *delta* only if ``credits_remaining`` still equals *expected_remaining*.

        Returns ``True`` when exactly one row was updated.  A ``False``
        return means another writer changed the row since it was read.
        """
        if delta <= 0 or delta > expected_remaining:
            raise ValueError(f"Invalid decrement {delta} against remaining {expected_remaining}")
        stmt = (
            update(PurchaseTable)
            .where(
                PurchaseTable.id == purchase_id,
                PurchaseTable.credits_remaining == expected_remaining,
            )
            .values(credits_remaining=PurchaseTable.credits_remaining - delta)
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        return (result.rowcount or 0) == 1  # type: ignore[attr-defined]

    async def _set_status(self, purchase_id: str, status: PurchaseStatus) -> bool:
        stmt = (
            update(PurchaseTable)
            .where(
                PurchaseTable.id == purchase_id,
                PurchaseTable.status == PurchaseStatus.PENDING.value,
            )
            .values(status=status.value)
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        await self._session.flush()
        return (result.rowcount or 0) == 1  # type: ignore[attr-defined]

    async def mark_completed(self, purchase_id: str) -> bool:
        """Transition a ``pending`` purchase to ``completed`` (consumable)."""
        return await self._set_status(purchase_id, PurchaseStatus.COMPLETED)

    async def mark_failed(self, purchase_id: str) -> bool:
        """Transition a ``pending`` purchase to ``failed``."""
        return await self._set_status(purchase_id, PurchaseStatus.FAILED)


# ---------------------------------------------------------------------------
# SubscriptionRepository
# ---------------------------------------------------------------------------


class SubscriptionRepository:
    """Persistence for recurring entitlements.

    Only the subscription state machine writes ``status``.
    """

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create(
        self,
        owner_id: str,
        external_subscription_ref: str,
        *,
        credits_per_period: int,
        period_start: datetime | None,
        period_end: datetime | None,
        external_customer_ref: str | None = None,
        status: SubscriptionStatus = SubscriptionStatus.ACTIVE,
    ) -> SubscriptionTable:
        row = SubscriptionTable(
            owner_id=owner_id,
            external_subscription_ref=external_subscription_ref,
            external_customer_ref=external_customer_ref,
            status=status.value,
            current_period_start=period_start,
            current_period_end=period_end,
            credits_per_period=credits_per_period,
        )
        self._session.add(row)
        await self._session.flush()
        return row

    async def get(self, subscription_id: str) -> SubscriptionTable | None:
        stmt = select(SubscriptionTable).where(SubscriptionTable.id == subscription_id)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_by_external_ref(self, external_subscription_ref: str) -> SubscriptionTable | None:
        stmt = select(SubscriptionTable).where(SubscriptionTable.external_subscription_ref == external_subscription_ref)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_active_for_owner(self, owner_id: str, now: datetime | None = None) -> SubscriptionTable | None:
        """Return the owner's active subscription with the latest period end.

        When *now* is given, subscriptions whose period already ended are
        not considered active.
        """
        stmt = select(SubscriptionTable).where(
            SubscriptionTable.owner_id == owner_id,
            SubscriptionTable.status == SubscriptionStatus.ACTIVE.value,
        )
        if now is not None:
            stmt = stmt.where(
                or_(
                    SubscriptionTable.current_period_end.is_(None),
                    SubscriptionTable.current_period_end > now,
                )
            )
        stmt = stmt.order_by(SubscriptionTable.current_period_end.desc()).limit(1)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def list_for_owner(self, owner_id: str) -> list[SubscriptionTable]:
        stmt = (
            select(SubscriptionTable)
            .where(SubscriptionTable.owner_id == owner_id)
            .order_by(SubscriptionTable.created_at.desc())
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def has_entitlement(self, owner_id: str) -> bool:
        """Return ``True`` if the owner holds any active or past-due subscription."""
        stmt = (
            select(func.count())
            .select_from(SubscriptionTable)
            .where(
                SubscriptionTable.owner_id == owner_id,
                SubscriptionTable.status.in_([SubscriptionStatus.ACTIVE.value, SubscriptionStatus.PAST_DUE.value]),
            )
        )
        result = await self._session.execute(stmt)
        return int(result.scalar_one()) > 0

    async def list_lapsed(self, now: datetime, grace: timedelta = timedelta(0)) -> list[SubscriptionTable]:
        """Return active subscriptions whose current period ended at least *grace* before *now*."""
        stmt = (
            select(SubscriptionTable)
            .where(
                SubscriptionTable.status == SubscriptionStatus.ACTIVE.value,
                SubscriptionTable.current_period_end.is_not(None),
                SubscriptionTable.current_period_end <= now - grace,
            )
            .order_by(SubscriptionTable.current_period_end.asc())
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def update(
        self,
        subscription: SubscriptionTable,
        *,
        status: SubscriptionStatus | None = None,
        period_start: datetime | None = None,
        period_end: datetime | None = None,
        cancel_at_period_end: bool | None = None,
    ) -> SubscriptionTable:
        """Apply the non-``None`` fields to *subscription* and flush."""
        if status is not None:
            subscription.status = status.value
        if period_start is not None:
            subscription.current_period_start = period_start
        if period_end is not None:
            subscription.current_period_end = period_end
        if cancel_at_period_end is not None:
            subscription.cancel_at_period_end = cancel_at_period_end
        subscription.updated_at = datetime.now(UTC)
        await self._session.flush()
        return subscription


# ---------------------------------------------------------------------------
# SubscriptionEventRepository
# ---------------------------------------------------------------------------


class SubscriptionEventRepository:
    """Append-only history of lifecycle events, keyed by external event id."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def exists(self, external_event_id: str) -> bool:
        stmt = select(SubscriptionEventTable.id).where(SubscriptionEventTable.external_event_id == external_event_id)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none() is not None

    async def claim(
        self,
        external_event_id: str,
        event_type: str,
        *,
        owner_id: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> bool:
        """Insert the event row unless one already exists.

        The row is written provisionally as ``applied``; call :meth:`resolve`
        once the outcome is known.  Returns ``False`` when another delivery
        of the same event id already holds the row, in which case the caller
        must not mutate anything.
        """
        result = await _dialect_upsert_nothing(
            self._session,
            SubscriptionEventTable,
            values={
                "external_event_id": external_event_id,
                "event_type": event_type,
                "owner_id": owner_id,
                "outcome": "applied",
                "details": details or {},
                "created_at": datetime.now(UTC),
            },
            index_elements=["external_event_id"],
        )
        await self._session.flush()
        return (result.rowcount or 0) > 0  # type: ignore[attr-defined]

    async def resolve(
        self,
        external_event_id: str,
        outcome: str,
        *,
        owner_id: str | None = None,
        subscription_id: str | None = None,
        reason: str | None = None,
    ) -> None:
        """Record the final outcome of a claimed event."""
        values: dict[str, Any] = {"outcome": outcome, "reason": reason, "subscription_id": subscription_id}
        if owner_id is not None:
            values["owner_id"] = owner_id
        stmt = (
            update(SubscriptionEventTable)
            .where(SubscriptionEventTable.external_event_id == external_event_id)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        await self._session.execute(stmt)
        await self._session.flush()

    async def get(self, external_event_id: str) -> SubscriptionEventTable | None:
        stmt = select(SubscriptionEventTable).where(SubscriptionEventTable.external_event_id == external_event_id)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def list_for_owner(self, owner_id: str, limit: int = 50) -> list[SubscriptionEventTable]:
        stmt = (
            select(SubscriptionEventTable)
            .where(SubscriptionEventTable.owner_id == owner_id)
            .order_by(SubscriptionEventTable.created_at.desc(), SubscriptionEventTable.id.desc())
            .limit(limit)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())


# ---------------------------------------------------------------------------
# UsageRecordRepository
# ---------------------------------------------------------------------------


class UsageRecordRepository:
    """Append-only audit trail of billable consumption."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

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
    ) -> UsageRecordTable:
        row = UsageRecordTable(
            owner_id=owner_id,
            purchase_id=purchase_id,
            subscription_id=subscription_id,
            request_excerpt=request_excerpt,
            response_excerpt=response_excerpt,
            credits_used=credits_used,
            used_own_key=used_own_key,
            created_at=datetime.now(UTC),
        )
        self._session.add(row)
        await self._session.flush()
        return row

    async def count_for_owner(self, owner_id: str) -> int:
        stmt = select(func.count()).select_from(UsageRecordTable).where(UsageRecordTable.owner_id == owner_id)
        result = await self._session.execute(stmt)
        return int(result.scalar_one())

    async def list_for_owner(self, owner_id: str, limit: int = 50) -> list[UsageRecordTable]:
        stmt = (
            select(UsageRecordTable)
            .where(UsageRecordTable.owner_id == owner_id)
            .order_by(UsageRecordTable.created_at.desc(), UsageRecordTable.id.desc())
            .limit(limit)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())
