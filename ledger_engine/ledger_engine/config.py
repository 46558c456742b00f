"""Ledger engine configuration loaded from environment variables."""

from __future__ import annotations

import logging
from enum import Enum

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)


class PlatformEnv(str, Enum):
    DEV = "dev"
    STAGING = "staging"
    PROD = "prod"


class Settings(BaseSettings):
    """Ledger settings loaded from environment variables with LEDGER_ prefix."""

    model_config = SettingsConfigDict(
        env_prefix="LEDGER_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    env: PlatformEnv = PlatformEnv.DEV
    debug: bool = False

    # Database
    database_url: str = "sqlite+aiosqlite:///.ledger/ledger.db"
    database_pool_size: int = 10
    database_max_overflow: int = 20

    # Consumption retry (compare-and-swap on purchases.credits_remaining)
    consume_max_retries: int = Field(default=3, ge=0)
    consume_base_delay: float = Field(default=0.05, gt=0.0)
    consume_max_delay: float = Field(default=1.0, gt=0.0)

    # Credit grants
    pro_credits_per_period: int = Field(default=200, gt=0)
    pro_validity_days: int = Field(default=30, gt=0)
    topup_credits: int = Field(default=100, gt=0)

    # Hours after a period ends before the expiry sweep gives up on a late renewal
    expiry_grace_hours: int = Field(default=72, ge=0)

    # Telemetry
    structured_logging: bool = False


def load_settings(**overrides: object) -> Settings:
    """Load settings from environment, with optional overrides for testing."""
    settings = Settings(**overrides)  # type: ignore[arg-type]

    if settings.debug:
        logger.info("Loaded settings for environment: %s", settings.env.value)

    return settings
