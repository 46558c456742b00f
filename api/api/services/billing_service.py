"""Stripe billing integration service.

Verifies webhook signatures, feeds the resulting lifecycle events into the
subscription state machine, and redeems the promotional coupon as a
locally originated subscription checkout.
"""

from __future__ import annotations

import json
import logging
from datetime import UTC, datetime
from decimal import Decimal
from typing import Any

from ledger_engine.models.ledger import PurchaseSource
from ledger_engine.models.subscription import (
    EventOutcome,
    EventResult,
    EventType,
    LifecycleEvent,
    derive_event_id,
)
from ledger_engine.state.repository import PurchaseRepository, SubscriptionRepository
from ledger_engine.subscriptions.state_machine import SubscriptionStateMachine
from ledger_engine.subscriptions.stripe_events import translate_stripe_event
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from api.config import APISettings

logger = logging.getLogger(__name__)


class WebhookVerificationError(Exception):
    """The webhook body or its signature header did not verify."""


class CouponRejected(Exception):
    """The coupon cannot be redeemed; ``status_code`` is the HTTP answer."""

    def __init__(self, status_code: int, detail: str) -> None:
        self.status_code = status_code
        self.detail = detail
        super().__init__(detail)


class BillingService:
    """Payment-provider operations on top of the subscription state machine.

    Parameters
    ----------
    session_factory:
        Factory for read-only lookups (active subscription, granted purchase).
    state_machine:
        Applies verified lifecycle events.
    settings:
        API settings containing Stripe and coupon configuration.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        state_machine: SubscriptionStateMachine,
        settings: APISettings,
    ) -> None:
        self._session_factory = session_factory
        self._state_machine = state_machine
        self._settings = settings

    # -- Webhooks ------------------------------------------------------------

    def verify_webhook(self, payload: bytes, sig_header: str) -> dict[str, Any]:
        """Verify the Stripe signature and return the event as a plain dict.

        Raises
        ------
        WebhookVerificationError
            Missing header, malformed payload, or signature mismatch.
        """
        if not sig_header:
            raise WebhookVerificationError("Missing Stripe signature")

        import stripe

        stripe.api_key = self._settings.stripe_secret_key.get_secret_value()
        try:
            stripe.Webhook.construct_event(
                payload=payload,
                sig_header=sig_header,
                secret=self._settings.stripe_webhook_secret.get_secret_value(),
            )
        except ValueError as exc:
            raise WebhookVerificationError("Invalid payload") from exc
        except Exception as exc:
            logger.warning("Stripe webhook signature verification failed: %s", exc)
            raise WebhookVerificationError("Signature verification failed") from exc

        try:
            event = json.loads(payload)
        except ValueError as exc:
            raise WebhookVerificationError("Invalid payload") from exc
        if not isinstance(event, dict):
            raise WebhookVerificationError("Invalid payload")
        return event

    async def handle_webhook_event(self, event: dict[str, Any]) -> EventResult | None:
        """Translate and apply a verified Stripe event.

        Returns ``None`` for event types the ledger does not act on.

        Raises
        ------
        StoreUnavailableError
            Propagated from the state machine so the provider redelivers.
        """
        lifecycle = translate_stripe_event(event)
        if lifecycle is None:
            logger.debug("Ignoring Stripe event %s of type %s", event.get("id"), event.get("type"))
            return None
        return await self._state_machine.apply(lifecycle)

    # -- Coupons -------------------------------------------------------------

    async def redeem_coupon(self, owner_id: str, code: str) -> tuple[EventResult, datetime | None]:
        """Grant a pro period for the configured coupon code.

        The event id is derived from the owner and the normalised code, so a
        second redemption by the same owner is a duplicate.

        Returns
        -------
        tuple
            The applied :class:`EventResult` and the granted purchase's expiry.

        Raises
        ------
        CouponRejected
            404 for an unknown or unconfigured code, 409 when the owner already
            has an active subscription or has redeemed this coupon before.
        """
        configured = self._settings.coupon_code.strip()
        if not configured:
            logger.warning("Coupon redemption attempted but no coupon code is configured")
            raise CouponRejected(404, "Coupon system not configured")
        normalised = code.strip().upper()
        if normalised != configured.upper():
            logger.info("Invalid coupon code submitted by owner=%s", owner_id)
            raise CouponRejected(404, "Invalid coupon code")

        async with self._session_factory() as session:
            active = await SubscriptionRepository(session).get_active_for_owner(owner_id, datetime.now(UTC))
        if active is not None:
            raise CouponRejected(409, "You already have an active Pro subscription")

        event_id = derive_event_id("coupon", owner_id, normalised)
        event = LifecycleEvent(
            event_id=event_id,
            event_type=EventType.CHECKOUT_COMPLETED,
            owner_id=owner_id,
            external_subscription_ref=f"coupon_{event_id.removeprefix('local_')[:24]}",
            purchase_type=PurchaseSource.SUBSCRIPTION,
            credits=self._settings.pro_credits_per_period,
            validity_days=self._settings.pro_validity_days,
            amount=Decimal("0"),
            currency="usd",
            details={"source": "coupon"},
        )
        result = await self._state_machine.apply(event)

        if result.outcome == EventOutcome.DUPLICATE_IGNORED:
            raise CouponRejected(409, "You have already redeemed this coupon")
        if not result.applied:
            logger.warning("Coupon redemption rejected owner=%s reason=%s", owner_id, result.reason)
            raise CouponRejected(409, "Coupon could not be applied")

        expires_at = None
        if result.purchase_id is not None:
            async with self._session_factory() as session:
                purchase = await PurchaseRepository(session).get(result.purchase_id)
            expires_at = purchase.expires_at if purchase is not None else None
        logger.info("Coupon redeemed owner=%s subscription=%s", owner_id, result.subscription_id)
        return result, expires_at
