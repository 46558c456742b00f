"""SQLAlchemy 2.0 ORM table definitions for the credit ledger store.

All tables use the modern ``Mapped`` / ``mapped_column`` declaration style
introduced in SQLAlchemy 2.0.  The ``Base`` declarative base is exported for
use by Alembic migrations and the repository layer.

Four tables carry the ledger proper (``purchases``, ``subscriptions``,
``usage_records``, ``subscription_events``); ``accounts`` holds the
per-owner tier that subscription events flip.
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime
from decimal import Decimal
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    DateTime,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    TypeDecorator,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

# Cross-dialect JSON type: uses JSONB on PostgreSQL for GIN indexing and
# query operators, falls back to plain JSON (stored as TEXT) on SQLite.
_JsonType = JSONB().with_variant(JSON(), "sqlite")


class UTCDateTime(TypeDecorator):
    """Timezone-aware DateTime that always reads back as UTC-aware.

    PostgreSQL returns aware values for ``timestamptz`` already; SQLite
    stores naive text, so the UTC offset is re-attached on load.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: datetime | None, dialect: Any) -> datetime | None:
        if value is not None and value.tzinfo is not None and dialect.name == "sqlite":
            return value.astimezone(UTC).replace(tzinfo=None)
        return value

    def process_result_value(self, value: datetime | None, dialect: Any) -> datetime | None:
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value


def _utcnow() -> datetime:
    """Return the current UTC timestamp (timezone-aware)."""
    return datetime.now(UTC)


def _new_id() -> str:
    return uuid.uuid4().hex


# ---------------------------------------------------------------------------
# Declarative base
# ---------------------------------------------------------------------------


class Base(DeclarativeBase):
    """Shared declarative base for all ledger tables."""


# ---------------------------------------------------------------------------
# Accounts
# ---------------------------------------------------------------------------


class AccountTable(Base):
    """One row per owner (verified user id from the identity provider)."""

    __tablename__ = "accounts"

    owner_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    email: Mapped[str | None] = mapped_column(String(320), nullable=True)
    tier: Mapped[str] = mapped_column(String(16), nullable=False, default="free")
    external_customer_ref: Mapped[str | None] = mapped_column(String(256), nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, onupdate=_utcnow, nullable=False)

    __table_args__ = (
        CheckConstraint("tier IN ('free','pro')", name="ck_accounts_tier"),
        Index("ix_accounts_customer_ref", "external_customer_ref"),
    )


# ---------------------------------------------------------------------------
# Purchases
# ---------------------------------------------------------------------------


class PurchaseTable(Base):
    """A grant of credits with its own remaining balance and expiry.

    ``credits_remaining`` is written only by the ledger engine through a
    conditional decrement; the check constraint keeps it inside
    ``[0, credits_granted]`` even if a caller gets that wrong.
    """

    __tablename__ = "purchases"

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=_new_id)
    owner_id: Mapped[str] = mapped_column(String(128), nullable=False)
    credits_granted: Mapped[int] = mapped_column(Integer, nullable=False)
    credits_remaining: Mapped[int] = mapped_column(Integer, nullable=False)
    amount: Mapped[Decimal | None] = mapped_column(Numeric(12, 2), nullable=True)
    currency: Mapped[str | None] = mapped_column(String(8), nullable=True)
    source: Mapped[str] = mapped_column(String(16), nullable=False)
    # Weak reference: no FK so subscription rows never gate purchase history.
    subscription_id: Mapped[str | None] = mapped_column(String(32), nullable=True)
    external_payment_ref: Mapped[str | None] = mapped_column(String(256), nullable=True)
    external_checkout_ref: Mapped[str | None] = mapped_column(String(256), nullable=True)
    expires_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="pending")
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, nullable=False)

    __table_args__ = (
        CheckConstraint("credits_granted > 0", name="ck_purchases_granted_positive"),
        CheckConstraint(
            "credits_remaining >= 0 AND credits_remaining <= credits_granted",
            name="ck_purchases_remaining_bounds",
        ),
        CheckConstraint("source IN ('subscription','topup')", name="ck_purchases_source"),
        CheckConstraint("status IN ('pending','completed','failed')", name="ck_purchases_status"),
        Index("ix_purchases_owner_status_created", "owner_id", "status", "created_at"),
        Index("ix_purchases_subscription", "subscription_id"),
    )


# ---------------------------------------------------------------------------
# Subscriptions
# ---------------------------------------------------------------------------


class SubscriptionTable(Base):
    """Recurring entitlement mirrored from the payment provider."""

    __tablename__ = "subscriptions"

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=_new_id)
    owner_id: Mapped[str] = mapped_column(String(128), nullable=False)
    external_subscription_ref: Mapped[str] = mapped_column(String(256), nullable=False, unique=True)
    external_customer_ref: Mapped[str | None] = mapped_column(String(256), nullable=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="active")
    current_period_start: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    current_period_end: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    credits_per_period: Mapped[int] = mapped_column(Integer, nullable=False, default=200)
    cancel_at_period_end: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, onupdate=_utcnow, nullable=False)

    __table_args__ = (
        CheckConstraint(
            "status IN ('active','past_due','cancelled','expired')",
            name="ck_subscriptions_status",
        ),
        CheckConstraint("credits_per_period > 0", name="ck_subscriptions_credits_positive"),
        Index("ix_subscriptions_owner_status", "owner_id", "status"),
    )


# ---------------------------------------------------------------------------
# Usage records
# ---------------------------------------------------------------------------


class UsageRecordTable(Base):
    """Append-only audit row for each billable consumption."""

    __tablename__ = "usage_records"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    owner_id: Mapped[str] = mapped_column(String(128), nullable=False)
    purchase_id: Mapped[str | None] = mapped_column(String(32), nullable=True)
    subscription_id: Mapped[str | None] = mapped_column(String(32), nullable=True)
    request_excerpt: Mapped[str | None] = mapped_column(String(100), nullable=True)
    response_excerpt: Mapped[str | None] = mapped_column(String(200), nullable=True)
    credits_used: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    used_own_key: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, nullable=False)

    __table_args__ = (
        CheckConstraint("credits_used >= 0", name="ck_usage_records_credits_non_negative"),
        Index("ix_usage_records_owner_created", "owner_id", "created_at"),
    )


# ---------------------------------------------------------------------------
# Subscription events
# ---------------------------------------------------------------------------


class SubscriptionEventTable(Base):
    """Append-only log of lifecycle events keyed by external event id.

    The unique constraint on ``external_event_id`` is what makes webhook
    replay a no-op.
    """

    __tablename__ = "subscription_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    external_event_id: Mapped[str] = mapped_column(String(256), nullable=False, unique=True)
    event_type: Mapped[str] = mapped_column(String(64), nullable=False)
    owner_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    subscription_id: Mapped[str | None] = mapped_column(String(32), nullable=True)
    outcome: Mapped[str] = mapped_column(String(16), nullable=False)
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    details: Mapped[dict[str, Any] | None] = mapped_column(_JsonType, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, nullable=False)

    __table_args__ = (
        CheckConstraint("outcome IN ('applied','rejected')", name="ck_subscription_events_outcome"),
        Index("ix_subscription_events_subscription", "subscription_id"),
        Index("ix_subscription_events_owner_created", "owner_id", "created_at"),
    )
