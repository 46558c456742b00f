"""Value types shared by the purchase store and the ledger engine."""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, Field


class PurchaseStatus(str, Enum):
    """Payment state of a purchase.  Only ``COMPLETED`` purchases are consumable."""

    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class PurchaseSource(str, Enum):
    """How a purchase came to exist."""

    SUBSCRIPTION = "subscription"
    TOPUP = "topup"


class AccountTier(str, Enum):
    FREE = "free"
    PRO = "pro"


class Allocation(BaseModel):
    """Credits drawn from a single purchase during one consume call."""

    purchase_id: str = Field(..., min_length=1)
    subscription_id: str | None = Field(default=None)
    credits: int = Field(..., gt=0)


class ConsumeResult(BaseModel):
    """Outcome of a successful ``reserve_and_consume`` call.

    ``purchase_id`` and ``subscription_id`` reference the oldest purchase the
    deduction drew from; ``allocations`` lists every purchase touched, in
    FIFO order.
    """

    owner_id: str = Field(..., min_length=1)
    credits_consumed: int = Field(..., gt=0)
    purchase_id: str = Field(..., min_length=1)
    subscription_id: str | None = Field(default=None)
    allocations: list[Allocation] = Field(default_factory=list)
    attempts: int = Field(default=1, ge=1, description="Number of CAS attempts used.")
