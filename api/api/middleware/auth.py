"""Authentication middleware that resolves bearer tokens to an owner id.

Extracts ``Authorization: Bearer <token>`` from every request and populates
``request.state`` with ``owner_id`` and ``email``.  Development tokens
(``bmdev.`` prefix) are verified locally with :class:`TokenManager`; any
other token is resolved against the configured remote identity provider.

Endpoints explicitly listed in ``_PUBLIC_PATHS`` bypass authentication.
"""

from __future__ import annotations

import logging
import os
import secrets
from typing import Any

from pydantic import SecretStr
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

from api.config import APISettings, PlatformEnv, load_api_settings
from api.security import DEV_TOKEN_PREFIX, IdentityProviderUnavailable, TokenClaims, TokenManager

logger = logging.getLogger(__name__)

# Paths that do not require authentication.
_PUBLIC_PATHS: frozenset[str] = frozenset(
    {
        "/api/v1/health",
        "/ready",
        "/docs",
        "/openapi.json",
        "/redoc",
        "/favicon.ico",
        "/api/v1/billing/webhooks",
    }
)

# Prefixes that skip auth (e.g. static docs assets).
_PUBLIC_PREFIXES: tuple[str, ...] = (
    "/docs",
    "/redoc",
)


def resolve_token_secret(settings: APISettings) -> SecretStr:
    """Return the HMAC secret for development tokens.

    Reads ``API_AUTH_SECRET`` and falls back to ``JWT_SECRET``.  In dev, a
    missing secret is replaced by a random per-process value; elsewhere it
    is a startup error.
    """
    value = settings.auth_secret.get_secret_value() or os.environ.get("JWT_SECRET", "")
    if value:
        return SecretStr(value)
    if settings.platform_env != PlatformEnv.DEV:
        raise RuntimeError(
            f"API_AUTH_SECRET (or JWT_SECRET) must be set when platform_env={settings.platform_env.value}. "
            "Refusing to start with an insecure default secret."
        )
    logger.warning(
        "API_AUTH_SECRET not set; generated random per-process dev secret. Tokens will not survive process restarts."
    )
    return SecretStr(f"dev-{secrets.token_hex(32)}")


def _is_public_path(path: str) -> bool:
    """Return ``True`` if the path should bypass authentication."""
    if path in _PUBLIC_PATHS:
        return True
    return any(path.startswith(prefix) for prefix in _PUBLIC_PREFIXES)


class AuthenticationMiddleware(BaseHTTPMiddleware):
    """Starlette middleware that enforces Bearer token authentication.

    On each request the middleware:

    1. Checks whether the path is public (health, docs, webhooks) and skips auth.
    2. Extracts the ``Authorization: Bearer <token>`` header.
    3. Verifies the token locally or through the identity provider.
    4. Stores ``owner_id`` and ``email`` on ``request.state``.
    5. Returns a 401/403/503 JSON response on failure.
    """

    def __init__(self, app: Any, settings: APISettings | None = None) -> None:
        super().__init__(app)
        settings = settings or load_api_settings()
        self._token_manager = TokenManager(resolve_token_secret(settings))
        self._remote_enabled = bool(settings.auth_provider_url)
        logger.info("AuthenticationMiddleware initialised (remote_provider=%s)", self._remote_enabled)

    async def _resolve(self, token: str) -> TokenClaims:
        if token.startswith(DEV_TOKEN_PREFIX):
            return self._token_manager.validate_token(token)
        if not self._remote_enabled:
            raise PermissionError("unsupported token format")

        from api.dependencies import get_identity_provider

        provider = get_identity_provider()
        if provider is None:
            raise IdentityProviderUnavailable("identity provider not initialised")
        return await provider.resolve(token)

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        path = request.url.path

        # Allow public endpoints through without authentication.
        if _is_public_path(path):
            return await call_next(request)

        auth_header = request.headers.get("authorization")
        if not auth_header:
            return JSONResponse(
                status_code=401,
                content={"detail": "Authentication required"},
            )

        # Expect "Bearer <token>" format.
        parts = auth_header.split(None, 1)
        if len(parts) != 2 or parts[0].lower() != "bearer":
            return JSONResponse(
                status_code=401,
                content={"detail": "Authorization header must use Bearer scheme"},
            )

        try:
            claims = await self._resolve(parts[1])
        except PermissionError as exc:
            error_msg = str(exc)
            # Distinguish expired tokens (403) from invalid tokens (401).
            if "expired" in error_msg.lower():
                return JSONResponse(status_code=403, content={"detail": "Token has expired"})
            logger.info("Rejected bearer token on %s: %s", path, error_msg)
            return JSONResponse(status_code=401, content={"detail": "Authentication failed"})
        except IdentityProviderUnavailable:
            return JSONResponse(
                status_code=503,
                content={"detail": "Authentication service unavailable"},
            )

        request.state.owner_id = claims.sub
        request.state.email = claims.email

        return await call_next(request)
