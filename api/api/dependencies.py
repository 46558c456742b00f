"""FastAPI dependency injection for the ledger store, compute client, and settings."""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator
from datetime import timedelta
from typing import Annotated

from fastapi import Depends, HTTPException, Request
from ledger_engine.ledger.engine import LedgerEngine
from ledger_engine.ledger.retry import RetryConfig
from ledger_engine.state.database import get_engine
from ledger_engine.subscriptions.state_machine import SubscriptionStateMachine
from ledger_engine.usage.recorder import UsageRecorder
from pydantic import SecretStr
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from api.config import APISettings, load_api_settings
from api.security import RemoteIdentityProvider
from api.services.compute_client import ComputeClient

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------

_settings_cache: APISettings | None = None


def get_settings() -> APISettings:
    """Return the cached :class:`APISettings` singleton."""
    global _settings_cache  # noqa: PLW0603
    if _settings_cache is None:
        _settings_cache = load_api_settings()
    return _settings_cache


SettingsDep = Annotated[APISettings, Depends(get_settings)]

# ---------------------------------------------------------------------------
# Database session
# ---------------------------------------------------------------------------

_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def init_engine(settings: APISettings) -> AsyncEngine:
    """Create and cache the global async engine."""
    global _engine, _session_factory  # noqa: PLW0603
    _engine = get_engine(
        settings.database_url,
        pool_size=settings.database_pool_size,
        max_overflow=settings.database_max_overflow,
    )
    _session_factory = async_sessionmaker(_engine, expire_on_commit=False)
    return _engine


async def dispose_engine() -> None:
    """Dispose the global engine pool (call during shutdown)."""
    global _engine, _session_factory  # noqa: PLW0603
    if _engine is not None:
        await _engine.dispose()
        _engine = None
        _session_factory = None


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Return the global async session factory.

    The ledger engine, state machine and usage recorder each open their own
    transactions, so they take the factory rather than a request session.
    """
    if _session_factory is None:
        raise RuntimeError(
            "Database engine has not been initialised. Ensure init_engine() is called during application startup."
        )
    return _session_factory


SessionFactoryDep = Annotated[async_sessionmaker[AsyncSession], Depends(get_session_factory)]


async def get_db_session() -> AsyncGenerator[AsyncSession, None]:
    """Yield a read-mostly ``AsyncSession`` for query endpoints.

    The session commits on clean exit and rolls back on exception.
    """
    session = get_session_factory()()
    try:
        yield session
        await session.commit()
    except Exception:
        await session.rollback()
        raise
    finally:
        await session.close()


SessionDep = Annotated[AsyncSession, Depends(get_db_session)]

# ---------------------------------------------------------------------------
# Ledger components
# ---------------------------------------------------------------------------


def get_ledger_engine(settings: SettingsDep, factory: SessionFactoryDep) -> LedgerEngine:
    """Build a :class:`LedgerEngine` bound to the global session factory."""
    return LedgerEngine(
        factory,
        retry_config=RetryConfig(
            max_retries=settings.consume_max_retries,
            base_delay=settings.consume_base_delay,
            max_delay=settings.consume_max_delay,
        ),
    )


LedgerDep = Annotated[LedgerEngine, Depends(get_ledger_engine)]


def get_state_machine(settings: SettingsDep, factory: SessionFactoryDep) -> SubscriptionStateMachine:
    """Build a :class:`SubscriptionStateMachine` with the configured grants."""
    return SubscriptionStateMachine(
        factory,
        credits_per_period=settings.pro_credits_per_period,
        validity_days=settings.pro_validity_days,
        topup_credits=settings.topup_credits,
        expiry_grace=timedelta(hours=settings.expiry_grace_hours),
    )


StateMachineDep = Annotated[SubscriptionStateMachine, Depends(get_state_machine)]

# ---------------------------------------------------------------------------
# Usage recorder
# ---------------------------------------------------------------------------

_usage_recorder: UsageRecorder | None = None


def init_usage_recorder(session_factory: async_sessionmaker[AsyncSession]) -> UsageRecorder:
    """Create and cache the global :class:`UsageRecorder`."""
    global _usage_recorder  # noqa: PLW0603
    _usage_recorder = UsageRecorder(session_factory)
    return _usage_recorder


async def dispose_usage_recorder() -> None:
    """Wait for in-flight usage writes, then drop the recorder."""
    global _usage_recorder  # noqa: PLW0603
    if _usage_recorder is not None:
        await _usage_recorder.drain()
        _usage_recorder = None


def get_usage_recorder() -> UsageRecorder:
    """Return the cached :class:`UsageRecorder` singleton."""
    if _usage_recorder is None:
        raise RuntimeError(
            "Usage recorder has not been initialised. Ensure init_usage_recorder() is called during application startup."
        )
    return _usage_recorder


UsageRecorderDep = Annotated[UsageRecorder, Depends(get_usage_recorder)]

# ---------------------------------------------------------------------------
# Compute client
# ---------------------------------------------------------------------------

_compute_client: ComputeClient | None = None


def init_compute_client(settings: APISettings) -> ComputeClient:
    """Create and cache the global :class:`ComputeClient`."""
    global _compute_client  # noqa: PLW0603
    _compute_client = ComputeClient(
        base_url=settings.compute_base_url,
        api_key=settings.compute_api_key,
        model=settings.compute_model,
        timeout=settings.compute_timeout,
    )
    return _compute_client


async def dispose_compute_client() -> None:
    """Close the compute client's underlying HTTP pool."""
    global _compute_client  # noqa: PLW0603
    if _compute_client is not None:
        await _compute_client.close()
        _compute_client = None


def get_compute_client() -> ComputeClient:
    """Return the cached :class:`ComputeClient` singleton."""
    if _compute_client is None:
        raise RuntimeError(
            "Compute client has not been initialised. Ensure init_compute_client() is called during application startup."
        )
    return _compute_client


ComputeDep = Annotated[ComputeClient, Depends(get_compute_client)]

# ---------------------------------------------------------------------------
# Identity provider (optional)
# ---------------------------------------------------------------------------

_identity_provider: RemoteIdentityProvider | None = None


def init_identity_provider(settings: APISettings) -> RemoteIdentityProvider | None:
    """Create the remote identity provider when ``auth_provider_url`` is set."""
    global _identity_provider  # noqa: PLW0603
    if not settings.auth_provider_url:
        return None
    _identity_provider = RemoteIdentityProvider(
        settings.auth_provider_url,
        settings.auth_provider_api_key or SecretStr(""),
        timeout=settings.auth_provider_timeout,
    )
    return _identity_provider


async def dispose_identity_provider() -> None:
    global _identity_provider  # noqa: PLW0603
    if _identity_provider is not None:
        await _identity_provider.close()
        _identity_provider = None


def get_identity_provider() -> RemoteIdentityProvider | None:
    """Return the identity provider, or ``None`` when dev tokens only."""
    return _identity_provider


# ---------------------------------------------------------------------------
# Owner identity (populated by AuthenticationMiddleware)
# ---------------------------------------------------------------------------


def get_owner_id(request: Request) -> str:
    """Extract the verified owner id from authenticated request state."""
    owner_id = getattr(request.state, "owner_id", None)
    if owner_id is None:
        raise HTTPException(status_code=401, detail="Authentication required")
    return owner_id


OwnerDep = Annotated[str, Depends(get_owner_id)]


def get_owner_email(request: Request) -> str | None:
    return getattr(request.state, "email", None)


EmailDep = Annotated[str | None, Depends(get_owner_email)]
