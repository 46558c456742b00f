"""Translate verified Stripe webhook payloads into lifecycle events.

Only the fields the state machine needs are extracted.  Signature
verification happens before this module sees the payload; the input is the
decoded JSON body of an already-verified event.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from decimal import Decimal
from typing import Any

from ledger_engine.models.ledger import PurchaseSource
from ledger_engine.models.subscription import EventType, LifecycleEvent

logger = logging.getLogger(__name__)

_SUBSCRIPTION_CHANGE_TYPES = frozenset({"customer.subscription.created", "customer.subscription.updated"})

_ASYNC_PAYMENT_TYPES = {
    "checkout.session.async_payment_succeeded": EventType.CHECKOUT_PAYMENT_SUCCEEDED,
    "checkout.session.async_payment_failed": EventType.CHECKOUT_PAYMENT_FAILED,
}


def _timestamp(value: Any) -> datetime | None:
    """Convert a Stripe epoch-seconds field to an aware UTC datetime."""
    if value in (None, ""):
        return None
    return datetime.fromtimestamp(int(value), tz=UTC)


def _major_units(value: Any) -> Decimal | None:
    """Stripe amounts are integers in minor units (cents)."""
    if value is None:
        return None
    return Decimal(int(value)) / Decimal(100)


def _positive_int(value: Any) -> int | None:
    try:
        parsed = int(value)
    except (TypeError, ValueError):
        return None
    return parsed if parsed > 0 else None


def _ref(value: Any) -> str | None:
    """Stripe may expand a reference into an object; keep only its id."""
    if isinstance(value, dict):
        return value.get("id")
    return value or None


def _subscription_period(subscription: dict[str, Any]) -> tuple[datetime | None, datetime | None]:
    start = subscription.get("current_period_start")
    end = subscription.get("current_period_end")
    if start is None or end is None:
        # Newer API versions carry the period on the subscription items.
        items = (subscription.get("items") or {}).get("data") or []
        if items:
            start = start if start is not None else items[0].get("current_period_start")
            end = end if end is not None else items[0].get("current_period_end")
    return _timestamp(start), _timestamp(end)


def _invoice_subscription_ref(invoice: dict[str, Any]) -> str | None:
    ref = _ref(invoice.get("subscription"))
    if ref:
        return ref
    details = ((invoice.get("parent") or {}).get("subscription_details")) or {}
    return _ref(details.get("subscription"))


def _invoice_period(invoice: dict[str, Any]) -> tuple[datetime | None, datetime | None]:
    lines = (invoice.get("lines") or {}).get("data") or []
    if lines and lines[0].get("period"):
        period = lines[0]["period"]
        return _timestamp(period.get("start")), _timestamp(period.get("end"))
    return _timestamp(invoice.get("period_start")), _timestamp(invoice.get("period_end"))


def translate_stripe_event(event: dict[str, Any]) -> LifecycleEvent | None:
    """Map a Stripe event to a :class:`LifecycleEvent`.

    Parameters
    ----------
    event:
        Decoded Stripe event (``id``, ``type``, ``data.object``).

    Returns
    -------
    LifecycleEvent | None
        ``None`` for event types the ledger does not act on.

    Raises
    ------
    ValueError
        The event is missing its id or the payload is malformed.
    """
    event_id = event.get("id")
    if not event_id:
        raise ValueError("Stripe event has no id")
    event_type = event.get("type", "")
    obj: dict[str, Any] = (event.get("data") or {}).get("object") or {}
    details = {"stripe_type": event_type, "object_id": obj.get("id")}

    if event_type == "checkout.session.completed":
        metadata = obj.get("metadata") or {}
        purchase_type = metadata.get("purchase_type")
        return LifecycleEvent(
            event_id=event_id,
            event_type=EventType.CHECKOUT_COMPLETED,
            owner_id=metadata.get("user_id"),
            external_subscription_ref=_ref(obj.get("subscription")),
            external_customer_ref=_ref(obj.get("customer")),
            purchase_type=PurchaseSource(purchase_type) if purchase_type in ("subscription", "topup") else None,
            credits=_positive_int(metadata.get("credits")),
            validity_days=_positive_int(metadata.get("validity_days")),
            amount=_major_units(obj.get("amount_total")),
            currency=obj.get("currency"),
            payment_ref=_ref(obj.get("payment_intent")),
            checkout_ref=obj.get("id"),
            payment_status=obj.get("payment_status"),
            details=details,
        )

    if event_type in _ASYNC_PAYMENT_TYPES:
        # Delayed payment methods settle the session after it completed.
        return LifecycleEvent(
            event_id=event_id,
            event_type=_ASYNC_PAYMENT_TYPES[event_type],
            owner_id=(obj.get("metadata") or {}).get("user_id"),
            external_customer_ref=_ref(obj.get("customer")),
            checkout_ref=obj.get("id"),
            payment_status=obj.get("payment_status"),
            details=details,
        )

    if event_type in _SUBSCRIPTION_CHANGE_TYPES:
        period_start, period_end = _subscription_period(obj)
        return LifecycleEvent(
            event_id=event_id,
            event_type=EventType.SUBSCRIPTION_UPDATED,
            external_subscription_ref=obj.get("id"),
            external_customer_ref=_ref(obj.get("customer")),
            provider_status=obj.get("status"),
            period_start=period_start,
            period_end=period_end,
            cancel_at_period_end=obj.get("cancel_at_period_end"),
            details=details,
        )

    if event_type == "customer.subscription.deleted":
        return LifecycleEvent(
            event_id=event_id,
            event_type=EventType.SUBSCRIPTION_DELETED,
            external_subscription_ref=obj.get("id"),
            external_customer_ref=_ref(obj.get("customer")),
            details=details,
        )

    if event_type == "invoice.payment_succeeded":
        period_start, period_end = _invoice_period(obj)
        return LifecycleEvent(
            event_id=event_id,
            event_type=EventType.INVOICE_PAYMENT_SUCCEEDED,
            external_subscription_ref=_invoice_subscription_ref(obj),
            external_customer_ref=_ref(obj.get("customer")),
            billing_reason=obj.get("billing_reason"),
            period_start=period_start,
            period_end=period_end,
            amount=_major_units(obj.get("amount_paid")),
            currency=obj.get("currency"),
            payment_ref=obj.get("id"),
            details=details,
        )

    if event_type == "invoice.payment_failed":
        return LifecycleEvent(
            event_id=event_id,
            event_type=EventType.INVOICE_PAYMENT_FAILED,
            external_subscription_ref=_invoice_subscription_ref(obj),
            external_customer_ref=_ref(obj.get("customer")),
            details=details,
        )

    logger.debug("Unhandled Stripe event type: %s", event_type)
    return None
