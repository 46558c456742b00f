"""Add usage_records and subscription_events.

``usage_records`` is the append-only audit of billable consumption.
``subscription_events`` logs every lifecycle event by its external id; the
unique constraint on ``external_event_id`` is what makes webhook replay a
no-op.

Revision ID: 002
Revises: 001
Create Date: 2026-09-01 00:00:01.000000+00:00

"""

from __future__ import annotations

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "002"
down_revision: str | None = "001"
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    op.create_table(
        "usage_records",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("owner_id", sa.String(128), nullable=False),
        sa.Column("purchase_id", sa.String(32), nullable=True),
        sa.Column("subscription_id", sa.String(32), nullable=True),
        sa.Column("request_excerpt", sa.String(100), nullable=True),
        sa.Column("response_excerpt", sa.String(200), nullable=True),
        sa.Column("credits_used", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("used_own_key", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.CheckConstraint("credits_used >= 0", name="ck_usage_records_credits_non_negative"),
    )
    op.create_index("ix_usage_records_owner_created", "usage_records", ["owner_id", "created_at"])

    op.create_table(
        "subscription_events",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("external_event_id", sa.String(256), nullable=False, unique=True),
        sa.Column("event_type", sa.String(64), nullable=False),
        sa.Column("owner_id", sa.String(128), nullable=True),
        sa.Column("subscription_id", sa.String(32), nullable=True),
        sa.Column("outcome", sa.String(16), nullable=False),
        sa.Column("reason", sa.Text(), nullable=True),
        sa.Column("details", postgresql.JSONB().with_variant(sa.JSON(), "sqlite"), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.CheckConstraint("outcome IN ('applied','rejected')", name="ck_subscription_events_outcome"),
    )
    op.create_index("ix_subscription_events_subscription", "subscription_events", ["subscription_id"])
    op.create_index(
        "ix_subscription_events_owner_created",
        "subscription_events",
        ["owner_id", "created_at"],
    )


def downgrade() -> None:
    op.drop_index("ix_subscription_events_owner_created")
    op.drop_index("ix_subscription_events_subscription")
    op.drop_table("subscription_events")
    op.drop_index("ix_usage_records_owner_created")
    op.drop_table("usage_records")
