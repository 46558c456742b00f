"""Tests for api/api/routers/billing.py

Covers:
- POST /billing/webhooks: signature validation, event dispatch into the
  subscription state machine, duplicate delivery, ignored types
- POST /billing/redeem-coupon: grant, unknown code, active subscription,
  second redemption
"""

from __future__ import annotations

import json
from typing import Any
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from api.dependencies import get_settings
from ledger_engine.errors import StoreUnavailableError
from ledger_engine.models.subscription import SubscriptionStatus
from ledger_engine.state.repository import (
    AccountRepository,
    PurchaseRepository,
    SubscriptionEventRepository,
    SubscriptionRepository,
)
from ledger_engine.subscriptions.state_machine import SubscriptionStateMachine
from pydantic import SecretStr

OWNER = "user-123"
COUPON = "WELCOME2026"
WEBHOOK = "/api/v1/billing/webhooks"
SIGNATURE = {"stripe-signature": "t=1700000000,v1=deadbeef"}


def _checkout_event(
    event_id: str = "evt_checkout_1",
    *,
    purchase_type: str = "subscription",
    credits: int = 200,
    subscription: str | None = "sub_123",
    payment_status: str = "paid",
) -> dict[str, Any]:
    return {
        "id": event_id,
        "type": "checkout.session.completed",
        "data": {
            "object": {
                "id": f"cs_{event_id}",
                "customer": "cus_123",
                "subscription": subscription,
                "payment_intent": f"pi_{event_id}",
                "amount_total": 999,
                "currency": "usd",
                "payment_status": payment_status,
                "metadata": {"user_id": OWNER, "purchase_type": purchase_type, "credits": str(credits)},
            }
        },
    }


def _deleted_event(event_id: str = "evt_deleted_1", ref: str = "sub_123") -> dict[str, Any]:
    return {
        "id": event_id,
        "type": "customer.subscription.deleted",
        "data": {"object": {"id": ref, "customer": "cus_123", "status": "canceled"}},
    }


@pytest.fixture()
def construct_event():
    """Patch Stripe's signature check so any signature verifies."""
    with patch("stripe.Webhook.construct_event", MagicMock(return_value={})) as mock:
        yield mock


async def _post_event(client, event: dict[str, Any]):
    return await client.post(WEBHOOK, content=json.dumps(event).encode(), headers=SIGNATURE)


# ---------------------------------------------------------------------------
# Webhooks
# ---------------------------------------------------------------------------


class TestWebhookVerification:
    @pytest.mark.asyncio
    async def test_missing_signature_header(self, anon_client) -> None:
        resp = await anon_client.post(WEBHOOK, content=json.dumps(_checkout_event()).encode())

        assert resp.status_code == 400
        assert resp.json()["detail"] == "Missing Stripe signature"

    @pytest.mark.asyncio
    async def test_bad_signature(self, anon_client, session_factory) -> None:
        error = Exception("No signatures found matching the expected signature for payload")
        with patch("stripe.Webhook.construct_event", MagicMock(side_effect=error)):
            resp = await _post_event(anon_client, _checkout_event())

        assert resp.status_code == 400
        assert resp.json()["detail"] == "Signature verification failed"
        async with session_factory() as session:
            assert await SubscriptionEventRepository(session).get("evt_checkout_1") is None

    @pytest.mark.asyncio
    async def test_invalid_payload(self, anon_client) -> None:
        with patch("stripe.Webhook.construct_event", MagicMock(side_effect=ValueError("bad json"))):
            resp = await anon_client.post(WEBHOOK, content=b"not json", headers=SIGNATURE)

        assert resp.status_code == 400
        assert resp.json()["detail"] == "Invalid payload"

    @pytest.mark.asyncio
    async def test_signature_checked_against_configured_secret(self, anon_client, construct_event) -> None:
        body = json.dumps(_checkout_event()).encode()

        await anon_client.post(WEBHOOK, content=body, headers=SIGNATURE)

        kwargs = construct_event.call_args.kwargs
        assert kwargs["payload"] == body
        assert kwargs["sig_header"] == SIGNATURE["stripe-signature"]
        assert kwargs["secret"] == "whsec_test"

    @pytest.mark.asyncio
    async def test_unconfigured_secret_refuses(self, app, anon_client, test_settings) -> None:
        settings = test_settings.model_copy(update={"stripe_webhook_secret": SecretStr("")})
        app.dependency_overrides[get_settings] = lambda: settings

        resp = await _post_event(anon_client, _checkout_event())

        assert resp.status_code == 503

    @pytest.mark.asyncio
    async def test_billing_disabled(self, app, anon_client, test_settings) -> None:
        settings = test_settings.model_copy(update={"billing_enabled": False})
        app.dependency_overrides[get_settings] = lambda: settings

        resp = await _post_event(anon_client, _checkout_event())

        assert resp.status_code == 200
        assert resp.json()["status"] == "billing_disabled"


class TestWebhookEvents:
    @pytest.mark.asyncio
    async def test_subscription_checkout_grants_credits(self, anon_client, construct_event, session_factory) -> None:
        resp = await _post_event(anon_client, _checkout_event())

        assert resp.status_code == 200
        assert resp.json() == {"status": "processed", "outcome": "applied", "reason": None}

        async with session_factory() as session:
            assert await PurchaseRepository(session).sum_eligible(OWNER) == 200
            sub = await SubscriptionRepository(session).get_by_external_ref("sub_123")
            assert sub is not None and sub.status == "active"
            account = await AccountRepository(session).get(OWNER)
            assert account.tier == "pro"
            assert account.external_customer_ref == "cus_123"

    @pytest.mark.asyncio
    async def test_redelivery_is_duplicate(self, anon_client, construct_event, session_factory) -> None:
        await _post_event(anon_client, _checkout_event())
        resp = await _post_event(anon_client, _checkout_event())

        assert resp.status_code == 200
        assert resp.json()["outcome"] == "duplicate_ignored"
        async with session_factory() as session:
            assert await PurchaseRepository(session).sum_eligible(OWNER) == 200

    @pytest.mark.asyncio
    async def test_topup_without_subscription_is_rejected(
        self, anon_client, construct_event, session_factory
    ) -> None:
        event = _checkout_event("evt_topup_1", purchase_type="topup", credits=100, subscription=None)

        resp = await _post_event(anon_client, event)

        assert resp.status_code == 200
        assert resp.json()["outcome"] == "rejected"
        assert resp.json()["reason"] == "no_active_subscription"
        async with session_factory() as session:
            assert await PurchaseRepository(session).sum_eligible(OWNER) == 0

    @pytest.mark.asyncio
    async def test_topup_with_subscription(self, anon_client, construct_event, session_factory) -> None:
        await _post_event(anon_client, _checkout_event())
        event = _checkout_event("evt_topup_2", purchase_type="topup", credits=100, subscription=None)

        resp = await _post_event(anon_client, event)

        assert resp.json()["outcome"] == "applied"
        async with session_factory() as session:
            assert await PurchaseRepository(session).sum_eligible(OWNER) == 300

    @pytest.mark.asyncio
    async def test_unpaid_topup_waits_for_async_payment(self, anon_client, construct_event, session_factory) -> None:
        await _post_event(anon_client, _checkout_event())
        event = _checkout_event(
            "evt_topup_3", purchase_type="topup", credits=100, subscription=None, payment_status="unpaid"
        )

        resp = await _post_event(anon_client, event)

        assert resp.json()["outcome"] == "applied"
        async with session_factory() as session:
            assert await PurchaseRepository(session).sum_eligible(OWNER) == 200

        settled = {
            "id": "evt_async_ok",
            "type": "checkout.session.async_payment_succeeded",
            "data": {"object": {"id": "cs_evt_topup_3", "payment_status": "paid", "metadata": {"user_id": OWNER}}},
        }
        resp = await _post_event(anon_client, settled)

        assert resp.json()["outcome"] == "applied"
        async with session_factory() as session:
            assert await PurchaseRepository(session).sum_eligible(OWNER) == 300

    @pytest.mark.asyncio
    async def test_cancellation_keeps_credits(self, anon_client, construct_event, session_factory) -> None:
        await _post_event(anon_client, _checkout_event())

        resp = await _post_event(anon_client, _deleted_event())

        assert resp.json()["outcome"] == "applied"
        async with session_factory() as session:
            sub = await SubscriptionRepository(session).get_by_external_ref("sub_123")
            assert sub.status == "cancelled"
            assert await PurchaseRepository(session).sum_eligible(OWNER) == 200

    @pytest.mark.asyncio
    async def test_unknown_subscription_ref(self, anon_client, construct_event) -> None:
        resp = await _post_event(anon_client, _deleted_event(ref="sub_missing"))

        assert resp.status_code == 200
        assert resp.json()["outcome"] == "rejected"
        assert resp.json()["reason"] == "unknown_subscription_ref"

    @pytest.mark.asyncio
    async def test_unhandled_type_is_ignored(self, anon_client, construct_event) -> None:
        event = {"id": "evt_other", "type": "charge.refunded", "data": {"object": {"id": "ch_1"}}}

        resp = await _post_event(anon_client, event)

        assert resp.status_code == 200
        assert resp.json()["status"] == "ignored"

    @pytest.mark.asyncio
    async def test_store_failure_asks_for_redelivery(self, anon_client, construct_event) -> None:
        apply = AsyncMock(side_effect=StoreUnavailableError("apply_event"))

        with patch.object(SubscriptionStateMachine, "apply", apply):
            resp = await _post_event(anon_client, _checkout_event())

        assert resp.status_code == 500
        assert resp.json() == {"detail": "Service temporarily unavailable"}


# ---------------------------------------------------------------------------
# Coupons
# ---------------------------------------------------------------------------


class TestRedeemCoupon:
    @pytest.mark.asyncio
    async def test_redeem_grants_pro_period(self, client, session_factory) -> None:
        resp = await client.post("/api/v1/billing/redeem-coupon", json={"code": " welcome2026 "})

        assert resp.status_code == 200
        body = resp.json()
        assert body["success"] is True
        assert body["credits_granted"] == 200
        assert body["expires_at"] is not None
        assert body["subscription_id"]

        async with session_factory() as session:
            assert await PurchaseRepository(session).sum_eligible(OWNER) == 200
            assert (await AccountRepository(session).get(OWNER)).tier == "pro"

    @pytest.mark.asyncio
    async def test_unknown_code(self, client) -> None:
        resp = await client.post("/api/v1/billing/redeem-coupon", json={"code": "NOPE"})

        assert resp.status_code == 404
        assert resp.json()["detail"] == "Invalid coupon code"

    @pytest.mark.asyncio
    async def test_coupons_not_configured(self, app, client, test_settings) -> None:
        settings = test_settings.model_copy(update={"coupon_code": ""})
        app.dependency_overrides[get_settings] = lambda: settings

        resp = await client.post("/api/v1/billing/redeem-coupon", json={"code": COUPON})

        assert resp.status_code == 404
        assert resp.json()["detail"] == "Coupon system not configured"

    @pytest.mark.asyncio
    async def test_active_subscription_blocks_coupon(self, client, anon_client, construct_event) -> None:
        await _post_event(anon_client, _checkout_event())

        resp = await client.post("/api/v1/billing/redeem-coupon", json={"code": COUPON})

        assert resp.status_code == 409
        assert "active" in resp.json()["detail"]

    @pytest.mark.asyncio
    async def test_second_redemption_is_refused(self, client, session_factory) -> None:
        first = await client.post("/api/v1/billing/redeem-coupon", json={"code": COUPON})
        assert first.status_code == 200

        async with session_factory() as session, session.begin():
            sub = await SubscriptionRepository(session).get(first.json()["subscription_id"])
            await SubscriptionRepository(session).update(sub, status=SubscriptionStatus.CANCELLED)

        second = await client.post("/api/v1/billing/redeem-coupon", json={"code": COUPON})

        assert second.status_code == 409
        assert second.json()["detail"] == "You have already redeemed this coupon"
        async with session_factory() as session:
            assert await PurchaseRepository(session).sum_eligible(OWNER) == 200

    @pytest.mark.asyncio
    async def test_requires_authentication(self, anon_client) -> None:
        resp = await anon_client.post("/api/v1/billing/redeem-coupon", json={"code": COUPON})
        assert resp.status_code == 401
