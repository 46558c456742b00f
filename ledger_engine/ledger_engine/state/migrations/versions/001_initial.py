"""Initial schema for the credit ledger.

Creates ``accounts``, ``purchases`` and ``subscriptions``.  Purchases carry
check constraints that keep ``credits_remaining`` inside
``[0, credits_granted]`` and an ``(owner_id, status, created_at)`` index that
serves both the FIFO scan and the eligible-balance aggregate.

Revision ID: 001
Revises: None
Create Date: 2026-09-01 00:00:00.000000+00:00

"""

from __future__ import annotations

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    # ------------------------------------------------------------------
    # accounts
    # ------------------------------------------------------------------
    op.create_table(
        "accounts",
        sa.Column("owner_id", sa.String(128), primary_key=True),
        sa.Column("email", sa.String(320), nullable=True),
        sa.Column("tier", sa.String(16), nullable=False, server_default="free"),
        sa.Column("external_customer_ref", sa.String(256), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.CheckConstraint("tier IN ('free','pro')", name="ck_accounts_tier"),
    )
    op.create_index("ix_accounts_customer_ref", "accounts", ["external_customer_ref"])

    # ------------------------------------------------------------------
    # purchases
    # ------------------------------------------------------------------
    op.create_table(
        "purchases",
        sa.Column("id", sa.String(32), primary_key=True),
        sa.Column("owner_id", sa.String(128), nullable=False),
        sa.Column("credits_granted", sa.Integer(), nullable=False),
        sa.Column("credits_remaining", sa.Integer(), nullable=False),
        sa.Column("amount", sa.Numeric(12, 2), nullable=True),
        sa.Column("currency", sa.String(8), nullable=True),
        sa.Column("source", sa.String(16), nullable=False),
        sa.Column("subscription_id", sa.String(32), nullable=True),
        sa.Column("external_payment_ref", sa.String(256), nullable=True),
        sa.Column("external_checkout_ref", sa.String(256), nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("status", sa.String(16), nullable=False, server_default="pending"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.CheckConstraint("credits_granted > 0", name="ck_purchases_granted_positive"),
        sa.CheckConstraint(
            "credits_remaining >= 0 AND credits_remaining <= credits_granted",
            name="ck_purchases_remaining_bounds",
        ),
        sa.CheckConstraint("source IN ('subscription','topup')", name="ck_purchases_source"),
        sa.CheckConstraint("status IN ('pending','completed','failed')", name="ck_purchases_status"),
    )
    op.create_index(
        "ix_purchases_owner_status_created",
        "purchases",
        ["owner_id", "status", "created_at"],
    )
    op.create_index("ix_purchases_subscription", "purchases", ["subscription_id"])

    # ------------------------------------------------------------------
    # subscriptions
    # ------------------------------------------------------------------
    op.create_table(
        "subscriptions",
        sa.Column("id", sa.String(32), primary_key=True),
        sa.Column("owner_id", sa.String(128), nullable=False),
        sa.Column("external_subscription_ref", sa.String(256), nullable=False, unique=True),
        sa.Column("external_customer_ref", sa.String(256), nullable=True),
        sa.Column("status", sa.String(16), nullable=False, server_default="active"),
        sa.Column("current_period_start", sa.DateTime(timezone=True), nullable=True),
        sa.Column("current_period_end", sa.DateTime(timezone=True), nullable=True),
        sa.Column("credits_per_period", sa.Integer(), nullable=False, server_default="200"),
        sa.Column("cancel_at_period_end", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.CheckConstraint(
            "status IN ('active','past_due','cancelled','expired')",
            name="ck_subscriptions_status",
        ),
        sa.CheckConstraint("credits_per_period > 0", name="ck_subscriptions_credits_positive"),
    )
    op.create_index("ix_subscriptions_owner_status", "subscriptions", ["owner_id", "status"])


def downgrade() -> None:
    op.drop_index("ix_subscriptions_owner_status")
    op.drop_table("subscriptions")
    op.drop_index("ix_purchases_subscription")
    op.drop_index("ix_purchases_owner_status_created")
    op.drop_table("purchases")
    op.drop_index("ix_accounts_customer_ref")
    op.drop_table("accounts")
