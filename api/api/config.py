"""API-layer configuration loaded from environment variables."""

from __future__ import annotations

from enum import Enum
from typing import Self

from pydantic import Field, SecretStr, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class PlatformEnv(str, Enum):
    """Deployment environment label."""

    DEV = "dev"
    STAGING = "staging"
    PRODUCTION = "production"


class APISettings(BaseSettings):
    """FastAPI application settings.

    All values can be overridden via environment variables prefixed with
    ``API_`` (e.g. ``API_HOST=0.0.0.0``) or through a ``.env`` file in the
    working directory.
    """

    model_config = SettingsConfigDict(
        env_prefix="API_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    host: str = "0.0.0.0"
    port: int = 8000
    debug: bool = False

    # Ledger store (asyncpg for PostgreSQL, aiosqlite for local runs).
    database_url: str = "sqlite+aiosqlite:///.ledger/ledger.db"
    database_pool_size: int = 10
    database_max_overflow: int = 20

    platform_env: PlatformEnv = PlatformEnv.DEV

    # Origins permitted by the CORS middleware.
    cors_origins: list[str] = ["http://localhost:3000"]

    # Whether CORS responses include credentials (cookies, auth headers).
    cors_allow_credentials: bool = True

    @model_validator(mode="after")
    def _validate_cors_credentials_not_wildcard(self) -> Self:
        """Reject wildcard origins when credentials are enabled.

        Browsers reject ``Access-Control-Allow-Origin: *`` together with
        ``Access-Control-Allow-Credentials: true``; fail at startup instead.
        """
        if self.cors_allow_credentials and "*" in self.cors_origins:
            raise ValueError(
                "Cannot use wildcard origins with credentials. "
                "Specify explicit origins instead of '*' when "
                "cors_allow_credentials=True."
            )
        return self

    # Rate limiting (per owner, in-process).
    rate_limit_enabled: bool = True
    rate_limit_requests_per_minute: int = 60
    rate_limit_analyze_per_minute: int = 30
    rate_limit_burst_multiplier: float = 1.0

    # Authentication.  Development tokens are HMAC-signed with this secret;
    # when ``auth_provider_url`` is set, bearer tokens are instead resolved
    # against that identity provider's user endpoint.
    auth_secret: SecretStr = SecretStr("")
    auth_provider_url: str | None = None
    auth_provider_api_key: SecretStr = SecretStr("")
    auth_provider_timeout: float = 5.0

    # Compute endpoint (OpenAI-compatible chat completions).
    compute_base_url: str = "https://api.openai.com/v1"
    compute_api_key: SecretStr = SecretStr("")
    compute_model: str = "gpt-4o-mini"
    compute_batch_model: str = "gpt-4o"
    compute_max_tokens: int = 150
    compute_batch_max_tokens: int = 300
    compute_timeout: float = 7.0

    # Structured JSON logging for log aggregation.
    structured_logging: bool = False

    # Stripe billing integration.
    billing_enabled: bool = True
    stripe_secret_key: SecretStr = SecretStr("")
    stripe_webhook_secret: SecretStr = SecretStr("")

    # Promotional coupon granting a pro period; empty disables redemption.
    coupon_code: str = ""

    # Credit grants.
    pro_credits_per_period: int = Field(default=200, gt=0)
    pro_validity_days: int = Field(default=30, gt=0)
    topup_credits: int = Field(default=100, gt=0)
    expiry_grace_hours: int = Field(default=72, ge=0)

    # Consumption retry (compare-and-swap on purchases.credits_remaining).
    consume_max_retries: int = Field(default=3, ge=0)
    consume_base_delay: float = Field(default=0.05, gt=0.0)
    consume_max_delay: float = Field(default=1.0, gt=0.0)


def load_api_settings() -> APISettings:
    """Construct settings from the environment / ``.env`` file."""
    return APISettings()
