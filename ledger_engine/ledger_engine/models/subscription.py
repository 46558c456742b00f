"""Subscription lifecycle models.

A :class:`LifecycleEvent` is the provider-neutral form of a verified payment
webhook.  The state machine consumes these and answers with an
:class:`EventResult`.
"""

from __future__ import annotations

import hashlib
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from ledger_engine.models.ledger import PurchaseSource


class SubscriptionStatus(str, Enum):
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


TERMINAL_STATUSES: frozenset[SubscriptionStatus] = frozenset({SubscriptionStatus.CANCELLED, SubscriptionStatus.EXPIRED})


class EventType(str, Enum):
    """Lifecycle events understood by the state machine."""

    CHECKOUT_COMPLETED = "checkout_completed"
    SUBSCRIPTION_UPDATED = "subscription_updated"
    SUBSCRIPTION_DELETED = "subscription_deleted"
    INVOICE_PAYMENT_SUCCEEDED = "invoice_payment_succeeded"
    INVOICE_PAYMENT_FAILED = "invoice_payment_failed"
    CHECKOUT_PAYMENT_SUCCEEDED = "checkout_payment_succeeded"
    CHECKOUT_PAYMENT_FAILED = "checkout_payment_failed"


class EventOutcome(str, Enum):
    APPLIED = "applied"
    DUPLICATE_IGNORED = "duplicate_ignored"
    REJECTED = "rejected"


# Billing reason carried by invoices that renew a subscription period.
RENEWAL_BILLING_REASON = "subscription_cycle"

# Checkout payment states that make a grant spendable immediately.  Anything
# else (``unpaid`` for delayed methods) leaves the purchase ``pending``.
SETTLED_PAYMENT_STATUSES: frozenset[str] = frozenset({"paid", "no_payment_required"})


def map_provider_status(provider_status: str | None) -> SubscriptionStatus:
    """Map a payment-provider subscription status onto the local status set.

    ``active`` and ``past_due`` pass through, ``canceled`` becomes
    ``cancelled``, and anything else (``unpaid``, ``incomplete_expired``...)
    is treated as ``expired``.
    """
    if provider_status == "active":
        return SubscriptionStatus.ACTIVE
    if provider_status == "past_due":
        return SubscriptionStatus.PAST_DUE
    if provider_status in ("canceled", "cancelled"):
        return SubscriptionStatus.CANCELLED
    return SubscriptionStatus.EXPIRED


def derive_event_id(*parts: str) -> str:
    """Derive a stable event id for locally originated grants (e.g. coupons).

    Identical inputs always produce the same id, so re-submitting the same
    grant is caught by the event log.
    """
    hasher = hashlib.sha256()
    for part in parts:
        hasher.update(part.encode("utf-8"))
        hasher.update(b"\x00")
    return "local_" + hasher.hexdigest()[:40]


class LifecycleEvent(BaseModel):
    """A verified, provider-neutral subscription lifecycle event."""

    event_id: str = Field(..., min_length=1, description="External event id used for deduplication.")
    event_type: EventType
    owner_id: str | None = Field(default=None, description="Owner resolved from checkout metadata.")
    external_subscription_ref: str | None = Field(default=None)
    external_customer_ref: str | None = Field(default=None)

    # checkout_completed
    purchase_type: PurchaseSource | None = Field(default=None)
    credits: int | None = Field(default=None, gt=0)
    validity_days: int | None = Field(default=None, gt=0)
    amount: Decimal | None = Field(default=None, ge=0, description="Amount paid in major currency units.")
    currency: str | None = Field(default=None, max_length=8)
    payment_ref: str | None = Field(default=None)
    checkout_ref: str | None = Field(default=None)
    payment_status: str | None = Field(
        default=None, description="Provider checkout payment status; ``None`` for locally originated grants."
    )

    # subscription_updated / invoice events
    provider_status: str | None = Field(default=None)
    period_start: datetime | None = Field(default=None)
    period_end: datetime | None = Field(default=None)
    cancel_at_period_end: bool | None = Field(default=None)
    billing_reason: str | None = Field(default=None)

    details: dict[str, Any] = Field(default_factory=dict, description="Raw event fragment kept for the history log.")

    @property
    def payment_settled(self) -> bool:
        """Whether a checkout grant from this event may be spent right away."""
        return self.payment_status is None or self.payment_status in SETTLED_PAYMENT_STATUSES


class EventResult(BaseModel):
    """Answer of ``apply_event``: applied, ignored as duplicate, or rejected with a reason."""

    event_id: str
    outcome: EventOutcome
    reason: str | None = None
    owner_id: str | None = None
    subscription_id: str | None = None
    purchase_id: str | None = None

    @property
    def applied(self) -> bool:
        return self.outcome == EventOutcome.APPLIED
