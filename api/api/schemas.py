"""Shared Pydantic request and response models for API endpoints.

These schemas ensure that endpoint payloads are validated and documented
in the OpenAPI specification.  Routers import from here to avoid duplication.
"""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field

MAX_BATCH_IMAGES = 4

# ---------------------------------------------------------------------------
# Credits
# ---------------------------------------------------------------------------


class PurchaseResponse(BaseModel):
    """A single purchase as shown to its owner."""

    id: str
    credits_granted: int
    credits_remaining: int
    source: str
    status: str
    subscription_id: str | None = None
    expires_at: datetime | None = None
    created_at: datetime


class BalanceResponse(BaseModel):
    """Response for ``GET /credits/balance``."""

    owner_id: str
    available_credits: int


class CreditsSummaryResponse(BaseModel):
    """Response for ``GET /credits``."""

    available_credits: int
    active_purchases: list[PurchaseResponse] = Field(default_factory=list)
    recent_purchases: list[PurchaseResponse] = Field(default_factory=list)
    total_usage: int = 0
    days_until_expiry: int | None = None
    next_expiry_date: datetime | None = None


# ---------------------------------------------------------------------------
# Account
# ---------------------------------------------------------------------------


class SubscriptionSummary(BaseModel):
    """Active subscription details."""

    id: str
    status: str
    current_period_start: datetime | None = None
    current_period_end: datetime | None = None
    credits_per_period: int
    cancel_at_period_end: bool = False


class AccountResponse(BaseModel):
    """Response for ``GET /account``."""

    owner_id: str
    email: str | None = None
    tier: str
    available_credits: int
    subscription: SubscriptionSummary | None = None


# ---------------------------------------------------------------------------
# Analyze
# ---------------------------------------------------------------------------


class AnalyzeRequest(BaseModel):
    """Request body for ``POST /analyze``."""

    image_data_url: str = Field(..., alias="imageDataUrl", description="base64 ``data:image/...`` URL.")
    context: str | None = None
    system_prompt: str | None = Field(default=None, alias="systemPrompt")
    user_api_key: str | None = Field(
        default=None,
        alias="userApiKey",
        description="Caller-supplied compute API key; when present no credits are consumed.",
    )

    model_config = {"populate_by_name": True}


class AnalyzeResponse(BaseModel):
    success: bool = True
    response: str
    remaining_credits: int | None = None
    tokens_used: int = 0


class BatchAnalyzeRequest(BaseModel):
    """Request body for ``POST /analyze/batch``."""

    images: list[str] = Field(..., min_length=1, max_length=MAX_BATCH_IMAGES)
    context: str | None = None
    system_prompt: str | None = Field(default=None, alias="systemPrompt")
    user_api_key: str | None = Field(default=None, alias="userApiKey")

    model_config = {"populate_by_name": True}


class BatchAnalyzeResponse(BaseModel):
    success: bool = True
    responses: list[str]
    remaining_credits: int | None = None
    total_tokens_used: int = 0


# ---------------------------------------------------------------------------
# Billing
# ---------------------------------------------------------------------------


class WebhookResponse(BaseModel):
    """Acknowledgement returned to the payment provider."""

    status: str
    outcome: str | None = None
    reason: str | None = None


class CouponRequest(BaseModel):
    """Request body for ``POST /billing/redeem-coupon``."""

    code: str = Field(..., min_length=1, max_length=64)


class CouponResponse(BaseModel):
    success: bool = True
    credits_granted: int
    expires_at: datetime | None = None
    subscription_id: str | None = None
