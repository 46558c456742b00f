"""Subscription lifecycle state machine.

Translates verified payment-provider events into subscription transitions
and credit grants::

    active --payment failed--> past_due --renewal paid--> active
    active/past_due --deleted--> cancelled        (terminal)
    active --period ended past the grace--> expired
    expired --renewal paid for a newer period--> active

Every event is applied at most once.  The event row in
``subscription_events`` is claimed (insert-if-absent) as the first write of
the transaction, so a concurrent or later delivery of the same external
event id either blocks on that row and then sees it, or sees it up front;
in both cases nothing else is mutated and the result is
``duplicate_ignored``.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ledger_engine.errors import DuplicateEventError, StoreUnavailableError, UnknownSubscriptionRefError
from ledger_engine.models.ledger import AccountTier, PurchaseSource, PurchaseStatus
from ledger_engine.models.subscription import (
    RENEWAL_BILLING_REASON,
    TERMINAL_STATUSES,
    EventOutcome,
    EventResult,
    EventType,
    LifecycleEvent,
    SubscriptionStatus,
    derive_event_id,
    map_provider_status,
)
from ledger_engine.state.repository import (
    AccountRepository,
    PurchaseRepository,
    SubscriptionEventRepository,
    SubscriptionRepository,
)
from ledger_engine.state.tables import SubscriptionTable

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(UTC)


class SubscriptionStateMachine:
    """Idempotent application of subscription lifecycle events.

    Parameters
    ----------
    session_factory:
        Factory producing sessions against the ledger store.  Each event is
        applied in a single transaction.
    credits_per_period:
        Credits granted per subscription period when the event does not say.
    validity_days:
        Period length used when the event carries no period end.
    topup_credits:
        Credits granted by a top-up when the event does not say.
    expiry_grace:
        How long after its period ends an active subscription waits for a
        renewal before the expiry sweep marks it ``expired``.
    clock:
        Returns the current UTC time; overridable for tests.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        credits_per_period: int = 200,
        validity_days: int = 30,
        topup_credits: int = 100,
        expiry_grace: timedelta = timedelta(hours=72),
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._credits_per_period = credits_per_period
        self._validity_days = validity_days
        self._topup_credits = topup_credits
        self._expiry_grace = expiry_grace
        self._clock = clock or _utcnow

    # -- Public API ----------------------------------------------------------

    async def apply_event(self, event_id: str, event_type: EventType | str, payload: dict[str, Any]) -> EventResult:
        """Validate *payload* into a :class:`LifecycleEvent` and apply it."""
        event = LifecycleEvent.model_validate({**payload, "event_id": event_id, "event_type": event_type})
        return await self.apply(event)

    async def apply(self, event: LifecycleEvent) -> EventResult:
        """Apply *event* exactly once.

        Returns
        -------
        EventResult
            ``applied``, ``duplicate_ignored`` or ``rejected`` with a reason.
            Rejections (unknown subscription ref, top-up without an active
            subscription, ...) are recorded in the event log so replays of
            them are duplicates too.

        Raises
        ------
        StoreUnavailableError
            The store failed; the caller should let the provider redeliver.
        """
        try:
            async with self._session_factory() as session, session.begin():
                events = SubscriptionEventRepository(session)
                if await events.exists(event.event_id):
                    raise DuplicateEventError(event.event_id)
                if not await events.claim(
                    event.event_id,
                    event.event_type.value,
                    owner_id=event.owner_id,
                    details=event.details,
                ):
                    raise DuplicateEventError(event.event_id)

                result = await self._dispatch(session, event)
                await events.resolve(
                    event.event_id,
                    result.outcome.value,
                    owner_id=result.owner_id,
                    subscription_id=result.subscription_id,
                    reason=result.reason,
                )
        except DuplicateEventError:
            logger.info("Ignoring duplicate event %s (%s)", event.event_id, event.event_type.value)
            return EventResult(event_id=event.event_id, outcome=EventOutcome.DUPLICATE_IGNORED)
        except SQLAlchemyError as exc:
            logger.error(
                "Failed to apply event %s (%s)",
                event.event_id,
                event.event_type.value,
                exc_info=True,
            )
            raise StoreUnavailableError("apply_event") from exc

        if result.applied:
            logger.info(
                "Applied %s event=%s owner=%s subscription=%s purchase=%s",
                event.event_type.value,
                event.event_id,
                result.owner_id,
                result.subscription_id,
                result.purchase_id,
            )
        else:
            logger.warning(
                "Rejected %s event=%s reason=%s",
                event.event_type.value,
                event.event_id,
                result.reason,
            )
        return result

    async def expire_lapsed(self) -> list[str]:
        """Move active subscriptions whose period ended more than the grace ago to ``expired``.

        Each expiry is logged in the event history under a derived event
        id, so running the sweep twice is harmless.  Owners left with no
        active or past-due subscription drop to the free tier.

        Returns
        -------
        list[str]
            Ids of the subscriptions that expired in this run.
        """
        now = self._clock()
        expired: list[str] = []
        try:
            async with self._session_factory() as session, session.begin():
                subs = SubscriptionRepository(session)
                events = SubscriptionEventRepository(session)
                for sub in await subs.list_lapsed(now, self._expiry_grace):
                    period_end = sub.current_period_end.isoformat() if sub.current_period_end else ""
                    event_id = derive_event_id("expire", sub.id, period_end)
                    if not await events.claim(event_id, "subscription_expired", owner_id=sub.owner_id):
                        continue
                    await subs.update(sub, status=SubscriptionStatus.EXPIRED)
                    await events.resolve(
                        event_id,
                        EventOutcome.APPLIED.value,
                        owner_id=sub.owner_id,
                        subscription_id=sub.id,
                    )
                    await self._sync_tier(session, sub.owner_id)
                    expired.append(sub.id)
        except SQLAlchemyError as exc:
            logger.error("Subscription expiry sweep failed", exc_info=True)
            raise StoreUnavailableError("expire_lapsed") from exc

        if expired:
            logger.info("Expired %d lapsed subscription(s)", len(expired))
        return expired

    # -- Dispatch ------------------------------------------------------------

    async def _dispatch(self, session: AsyncSession, event: LifecycleEvent) -> EventResult:
        handlers = {
            EventType.CHECKOUT_COMPLETED: self._checkout_completed,
            EventType.SUBSCRIPTION_UPDATED: self._subscription_updated,
            EventType.SUBSCRIPTION_DELETED: self._subscription_deleted,
            EventType.INVOICE_PAYMENT_SUCCEEDED: self._invoice_payment_succeeded,
            EventType.INVOICE_PAYMENT_FAILED: self._invoice_payment_failed,
            EventType.CHECKOUT_PAYMENT_SUCCEEDED: self._checkout_payment_succeeded,
            EventType.CHECKOUT_PAYMENT_FAILED: self._checkout_payment_failed,
        }
        handler = handlers.get(event.event_type)
        if handler is None:
            return _rejected(event, "unsupported_event_type")
        try:
            return await handler(session, event)
        except UnknownSubscriptionRefError as exc:
            logger.info("No subscription for ref %s; %s is a no-op", exc.external_ref, event.event_type.value)
            return _rejected(event, exc.label)

    async def _require_subscription(self, session: AsyncSession, event: LifecycleEvent) -> SubscriptionTable:
        ref = event.external_subscription_ref
        sub = await SubscriptionRepository(session).get_by_external_ref(ref) if ref else None
        if sub is None:
            raise UnknownSubscriptionRefError(ref or "<missing>")
        return sub

    async def _sync_tier(self, session: AsyncSession, owner_id: str) -> AccountTier:
        """Set the owner's tier from whether any subscription still entitles them."""
        accounts = AccountRepository(session)
        await accounts.ensure(owner_id)
        entitled = await SubscriptionRepository(session).has_entitlement(owner_id)
        tier = AccountTier.PRO if entitled else AccountTier.FREE
        await accounts.set_tier(owner_id, tier)
        return tier

    # -- Handlers ------------------------------------------------------------

    async def _checkout_completed(self, session: AsyncSession, event: LifecycleEvent) -> EventResult:
        owner_id = event.owner_id
        if not owner_id:
            return _rejected(event, "missing_owner")

        accounts = AccountRepository(session)
        await accounts.ensure(owner_id)
        if event.external_customer_ref:
            await accounts.set_customer_ref(owner_id, event.external_customer_ref)

        if event.purchase_type == PurchaseSource.SUBSCRIPTION:
            return await self._grant_subscription(session, event, owner_id)
        if event.purchase_type == PurchaseSource.TOPUP:
            return await self._grant_topup(session, event, owner_id)
        return _rejected(event, "unknown_purchase_type", owner_id=owner_id)

    async def _grant_subscription(self, session: AsyncSession, event: LifecycleEvent, owner_id: str) -> EventResult:
        ref = event.external_subscription_ref
        if not ref:
            return _rejected(event, "missing_subscription_ref", owner_id=owner_id)

        now = self._clock()
        credits = event.credits or self._credits_per_period
        period_start = event.period_start or now
        period_end = event.period_end or period_start + timedelta(days=event.validity_days or self._validity_days)

        subs = SubscriptionRepository(session)
        sub = await subs.get_by_external_ref(ref)
        if sub is None:
            sub = await subs.create(
                owner_id,
                ref,
                credits_per_period=credits,
                period_start=period_start,
                period_end=period_end,
                external_customer_ref=event.external_customer_ref,
            )
        elif sub.owner_id != owner_id:
            return _rejected(event, "subscription_owner_mismatch", owner_id=owner_id)
        else:
            await subs.update(
                sub,
                status=SubscriptionStatus.ACTIVE,
                period_start=period_start,
                period_end=period_end,
            )

        purchase = await PurchaseRepository(session).create(
            owner_id,
            credits,
            PurchaseSource.SUBSCRIPTION,
            expires_at=period_end,
            status=_grant_status(event),
            subscription_id=sub.id,
            amount=event.amount,
            currency=event.currency,
            external_payment_ref=event.payment_ref,
            external_checkout_ref=event.checkout_ref,
            created_at=now,
        )
        await AccountRepository(session).set_tier(owner_id, AccountTier.PRO)
        return _applied(event, owner_id=owner_id, subscription_id=sub.id, purchase_id=purchase.id)

    async def _grant_topup(self, session: AsyncSession, event: LifecycleEvent, owner_id: str) -> EventResult:
        now = self._clock()
        active = await SubscriptionRepository(session).get_active_for_owner(owner_id, now)
        if active is None:
            logger.warning("Top-up for owner=%s without an active subscription (event %s)", owner_id, event.event_id)
            return _rejected(event, "no_active_subscription", owner_id=owner_id)

        # A top-up expires with the period it was bought in.
        expires_at = active.current_period_end or now + timedelta(days=event.validity_days or self._validity_days)
        purchase = await PurchaseRepository(session).create(
            owner_id,
            event.credits or self._topup_credits,
            PurchaseSource.TOPUP,
            expires_at=expires_at,
            status=_grant_status(event),
            subscription_id=active.id,
            amount=event.amount,
            currency=event.currency,
            external_payment_ref=event.payment_ref,
            external_checkout_ref=event.checkout_ref,
            created_at=now,
        )
        return _applied(event, owner_id=owner_id, subscription_id=active.id, purchase_id=purchase.id)

    async def _subscription_updated(self, session: AsyncSession, event: LifecycleEvent) -> EventResult:
        sub = await self._require_subscription(session, event)
        current = SubscriptionStatus(sub.status)
        new_status = map_provider_status(event.provider_status) if event.provider_status else None

        revived = new_status == SubscriptionStatus.ACTIVE and _revives(sub, event)
        if current in TERMINAL_STATUSES and new_status not in (None, current) and not revived:
            return _rejected(event, "terminal_state", owner_id=sub.owner_id, subscription_id=sub.id)

        await SubscriptionRepository(session).update(
            sub,
            status=new_status,
            period_start=event.period_start,
            period_end=event.period_end,
            cancel_at_period_end=event.cancel_at_period_end,
        )
        if new_status is not None and new_status != current:
            await self._sync_tier(session, sub.owner_id)
        return _applied(event, owner_id=sub.owner_id, subscription_id=sub.id)

    async def _subscription_deleted(self, session: AsyncSession, event: LifecycleEvent) -> EventResult:
        sub = await self._require_subscription(session, event)
        # Purchases already granted stay usable until their own expiry.
        await SubscriptionRepository(session).update(sub, status=SubscriptionStatus.CANCELLED)
        await self._sync_tier(session, sub.owner_id)
        return _applied(event, owner_id=sub.owner_id, subscription_id=sub.id)

    async def _invoice_payment_succeeded(self, session: AsyncSession, event: LifecycleEvent) -> EventResult:
        sub = await self._require_subscription(session, event)
        if event.billing_reason != RENEWAL_BILLING_REASON:
            return _rejected(event, "not_a_renewal", owner_id=sub.owner_id, subscription_id=sub.id)
        if SubscriptionStatus(sub.status) in TERMINAL_STATUSES and not _revives(sub, event):
            return _rejected(event, "terminal_state", owner_id=sub.owner_id, subscription_id=sub.id)

        purchases = PurchaseRepository(session)
        if event.payment_ref and await purchases.find_by_payment_ref(event.payment_ref) is not None:
            return _rejected(event, "renewal_already_granted", owner_id=sub.owner_id, subscription_id=sub.id)

        now = self._clock()
        period_start = event.period_start or now
        period_end = event.period_end or period_start + timedelta(days=self._validity_days)
        purchase = await purchases.create(
            sub.owner_id,
            sub.credits_per_period,
            PurchaseSource.SUBSCRIPTION,
            expires_at=period_end,
            subscription_id=sub.id,
            amount=event.amount,
            currency=event.currency,
            external_payment_ref=event.payment_ref,
            created_at=now,
        )
        await SubscriptionRepository(session).update(
            sub,
            status=SubscriptionStatus.ACTIVE,
            period_start=period_start,
            period_end=period_end,
        )
        await self._sync_tier(session, sub.owner_id)
        return _applied(event, owner_id=sub.owner_id, subscription_id=sub.id, purchase_id=purchase.id)

    async def _invoice_payment_failed(self, session: AsyncSession, event: LifecycleEvent) -> EventResult:
        sub = await self._require_subscription(session, event)
        if SubscriptionStatus(sub.status) in TERMINAL_STATUSES:
            return _rejected(event, "terminal_state", owner_id=sub.owner_id, subscription_id=sub.id)
        await SubscriptionRepository(session).update(sub, status=SubscriptionStatus.PAST_DUE)
        return _applied(event, owner_id=sub.owner_id, subscription_id=sub.id)

    async def _checkout_payment_succeeded(self, session: AsyncSession, event: LifecycleEvent) -> EventResult:
        return await self._settle_checkout(session, event, PurchaseStatus.COMPLETED)

    async def _checkout_payment_failed(self, session: AsyncSession, event: LifecycleEvent) -> EventResult:
        return await self._settle_checkout(session, event, PurchaseStatus.FAILED)

    async def _settle_checkout(
        self,
        session: AsyncSession,
        event: LifecycleEvent,
        status: PurchaseStatus,
    ) -> EventResult:
        """Resolve the ``pending`` purchase left by a checkout paid with a delayed method."""
        if not event.checkout_ref:
            return _rejected(event, "missing_checkout_ref")
        purchases = PurchaseRepository(session)
        purchase = await purchases.find_by_checkout_ref(event.checkout_ref)
        if purchase is None:
            return _rejected(event, "unknown_checkout_ref")

        if status == PurchaseStatus.COMPLETED:
            settled = await purchases.mark_completed(purchase.id)
        else:
            settled = await purchases.mark_failed(purchase.id)
        if not settled:
            return _rejected(
                event,
                "purchase_not_pending",
                owner_id=purchase.owner_id,
                subscription_id=purchase.subscription_id,
            )
        return _applied(
            event,
            owner_id=purchase.owner_id,
            subscription_id=purchase.subscription_id,
            purchase_id=purchase.id,
        )


def _grant_status(event: LifecycleEvent) -> PurchaseStatus:
    return PurchaseStatus.COMPLETED if event.payment_settled else PurchaseStatus.PENDING


def _revives(sub: SubscriptionTable, event: LifecycleEvent) -> bool:
    """Whether a renewal brings an ``expired`` subscription back.

    The sweep can expire a subscription whose renewal is only late.  A
    renewal for a period ending after the stored one revives it;
    ``cancelled`` stays terminal.
    """
    if SubscriptionStatus(sub.status) != SubscriptionStatus.EXPIRED or event.period_end is None:
        return False
    return sub.current_period_end is None or event.period_end > sub.current_period_end


def _applied(
    event: LifecycleEvent,
    *,
    owner_id: str | None,
    subscription_id: str | None = None,
    purchase_id: str | None = None,
) -> EventResult:
    return EventResult(
        event_id=event.event_id,
        outcome=EventOutcome.APPLIED,
        owner_id=owner_id,
        subscription_id=subscription_id,
        purchase_id=purchase_id,
    )


def _rejected(
    event: LifecycleEvent,
    reason: str,
    *,
    owner_id: str | None = None,
    subscription_id: str | None = None,
) -> EventResult:
    return EventResult(
        event_id=event.event_id,
        outcome=EventOutcome.REJECTED,
        reason=reason,
        owner_id=owner_id or event.owner_id,
        subscription_id=subscription_id,
    )
