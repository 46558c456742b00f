"""FastAPI application entry-point for the credit ledger API."""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from ledger_engine.errors import ConflictError, InsufficientCreditsError, StoreUnavailableError
from sqlalchemy.exc import SQLAlchemyError

from api import __version__
from api.config import APISettings, PlatformEnv, load_api_settings
from api.dependencies import (
    dispose_compute_client,
    dispose_engine,
    dispose_identity_provider,
    dispose_usage_recorder,
    get_session_factory,
    init_compute_client,
    init_engine,
    init_identity_provider,
    init_usage_recorder,
)
from api.middleware.auth import AuthenticationMiddleware
from api.middleware.logging import RequestLoggingMiddleware
from api.middleware.rate_limit import RateLimitConfig, RateLimitMiddleware
from api.routers import account, analyze, billing, credits, health

logger = logging.getLogger(__name__)

_UNAVAILABLE = "Service temporarily unavailable"


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application startup / shutdown lifecycle.

    On startup:
    - Initialise the async database engine.
    - Create tables in dev or local SQLite mode (production runs Alembic).
    - Initialise the compute client, usage recorder and identity provider.

    On shutdown:
    - Wait for pending usage writes.
    - Close HTTP clients and dispose the engine pool.
    """
    settings: APISettings = load_api_settings()

    if settings.structured_logging:
        from api.middleware.json_formatter import JSONFormatter

        root_logger = logging.getLogger()
        root_logger.handlers.clear()
        handler = logging.StreamHandler()
        handler.setFormatter(JSONFormatter())
        root_logger.addHandler(handler)
        root_logger.setLevel(logging.INFO)
        logger.info("Structured JSON logging enabled")

    engine = init_engine(settings)
    is_local = settings.database_url.startswith("sqlite")
    logger.info("Database engine initialised (%s)", "local" if is_local else "postgres")

    if settings.platform_env == PlatformEnv.DEV or is_local:
        from ledger_engine.state.tables import Base

        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("Database tables ensured (%s)", "local SQLite" if is_local else "dev auto-migration")

    init_compute_client(settings)
    logger.info("Compute client initialised (%s, model=%s)", settings.compute_base_url, settings.compute_model)

    init_usage_recorder(get_session_factory())

    if init_identity_provider(settings) is not None:
        logger.info("Remote identity provider initialised (%s)", settings.auth_provider_url)

    if settings.billing_enabled and not settings.stripe_webhook_secret.get_secret_value():
        logger.warning("Billing enabled but API_STRIPE_WEBHOOK_SECRET is empty; webhooks will be refused")

    yield

    await dispose_usage_recorder()
    await dispose_identity_provider()
    await dispose_compute_client()
    await dispose_engine()
    logger.info("Application shutdown complete")


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------


def create_app(settings: APISettings | None = None) -> FastAPI:
    """Construct and configure the FastAPI application."""
    settings = settings or load_api_settings()

    app = FastAPI(
        title="Credit Ledger API",
        description="Metered image analysis billed against prepaid, expiring credit purchases.",
        version=__version__,
        lifespan=lifespan,
    )

    # -- Middleware (last added runs first) ----------------------------------

    app.add_middleware(RateLimitMiddleware, config=RateLimitConfig.from_settings(settings))
    app.add_middleware(AuthenticationMiddleware, settings=settings)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=settings.cors_allow_credentials,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Authorization", "Content-Type", "X-Correlation-ID", "Accept"],
    )
    app.add_middleware(RequestLoggingMiddleware)

    # -- Routers -------------------------------------------------------------

    app.include_router(health.router, prefix="/api/v1")
    app.include_router(credits.router, prefix="/api/v1")
    app.include_router(analyze.router, prefix="/api/v1")
    app.include_router(billing.router, prefix="/api/v1")
    app.include_router(account.router, prefix="/api/v1")
    app.include_router(health.readiness_router)

    # -- Exception handlers --------------------------------------------------

    @app.exception_handler(InsufficientCreditsError)
    async def insufficient_credits_handler(request: Request, exc: InsufficientCreditsError) -> JSONResponse:
        return JSONResponse(
            status_code=402,
            content={
                "detail": "Insufficient credits",
                "available_credits": exc.available,
                "required_credits": exc.requested,
            },
        )

    @app.exception_handler(ConflictError)
    async def conflict_handler(request: Request, exc: ConflictError) -> JSONResponse:
        logger.warning("Conflict on %s after %d attempt(s)", request.url.path, exc.attempts)
        return JSONResponse(status_code=503, content={"detail": "Please try again"}, headers={"Retry-After": "1"})

    @app.exception_handler(StoreUnavailableError)
    async def store_unavailable_handler(request: Request, exc: StoreUnavailableError) -> JSONResponse:
        # The driver error is already logged where it was wrapped.
        logger.error("Store unavailable on %s during %s", request.url.path, exc.operation)
        return JSONResponse(status_code=500, content={"detail": _UNAVAILABLE})

    @app.exception_handler(SQLAlchemyError)
    async def sqlalchemy_error_handler(request: Request, exc: SQLAlchemyError) -> JSONResponse:
        logger.error("Database error on %s", request.url.path, exc_info=exc)
        return JSONResponse(status_code=500, content={"detail": _UNAVAILABLE})

    @app.exception_handler(ValueError)
    async def value_error_handler(request: Request, exc: ValueError) -> JSONResponse:
        # Log the full error for debugging; return a safe message to the client.
        logger.warning("ValueError on %s: %s", request.url.path, exc)
        return JSONResponse(status_code=400, content={"detail": "Invalid request"})

    return app


# Module-level application instance used by ``uvicorn api.main:app``.
app = create_app()
