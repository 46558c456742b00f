"""Billing endpoints: Stripe webhooks and coupon redemption."""

from __future__ import annotations

import logging
from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, Request

from api.dependencies import OwnerDep, SessionFactoryDep, SettingsDep, StateMachineDep
from api.schemas import CouponRequest, CouponResponse, WebhookResponse
from api.services.billing_service import BillingService, CouponRejected, WebhookVerificationError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/billing", tags=["billing"])


def get_billing_service(
    factory: SessionFactoryDep,
    state_machine: StateMachineDep,
    settings: SettingsDep,
) -> BillingService:
    return BillingService(factory, state_machine, settings)


BillingDep = Annotated[BillingService, Depends(get_billing_service)]


@router.post("/webhooks", response_model=WebhookResponse)
async def stripe_webhook(
    request: Request,
    settings: SettingsDep,
    billing: BillingDep,
) -> WebhookResponse:
    """Handle incoming Stripe webhook events.

    Authenticated by the Stripe signature rather than a bearer token.
    Store failures surface as 500 so Stripe redelivers; every other
    outcome, including rejections and duplicates, is acknowledged with 200.
    """
    if not settings.billing_enabled:
        return WebhookResponse(status="billing_disabled")
    if not settings.stripe_webhook_secret.get_secret_value():
        logger.error("Stripe webhook received but API_STRIPE_WEBHOOK_SECRET is not configured")
        raise HTTPException(status_code=503, detail="Webhook endpoint not configured")

    body = await request.body()
    try:
        event = billing.verify_webhook(body, request.headers.get("stripe-signature", ""))
    except WebhookVerificationError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    result = await billing.handle_webhook_event(event)
    if result is None:
        return WebhookResponse(status="ignored")
    return WebhookResponse(status="processed", outcome=result.outcome.value, reason=result.reason)


@router.post("/redeem-coupon", response_model=CouponResponse)
async def redeem_coupon(
    body: CouponRequest,
    settings: SettingsDep,
    billing: BillingDep,
    owner_id: OwnerDep,
) -> CouponResponse:
    """Redeem the promotional coupon for a pro subscription period."""
    try:
        result, expires_at = await billing.redeem_coupon(owner_id, body.code)
    except CouponRejected as exc:
        raise HTTPException(status_code=exc.status_code, detail=exc.detail) from exc
    return CouponResponse(
        credits_granted=settings.pro_credits_per_period,
        expires_at=expires_at,
        subscription_id=result.subscription_id,
    )
