"""Tests for api/api/middleware/auth.py

Covers:
- Public paths bypass authentication.
- Missing, malformed, forged and expired bearer tokens are refused.
- Verified tokens populate ``request.state.owner_id`` and ``email``.
- Non-development tokens are resolved by the remote identity provider.
"""

from __future__ import annotations

from unittest.mock import AsyncMock, patch

import pytest
from api.config import APISettings, PlatformEnv
from api.middleware.auth import AuthenticationMiddleware, resolve_token_secret
from api.security import IdentityProviderUnavailable, TokenClaims, TokenManager
from httpx import ASGITransport, AsyncClient
from pydantic import SecretStr
from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.routing import Route

SECRET = "auth-middleware-secret"


def _settings(**overrides) -> APISettings:
    values = {"auth_secret": SecretStr(SECRET), "platform_env": "dev"}
    values.update(overrides)
    return APISettings(**values)


def _make_app(settings: APISettings | None = None) -> Starlette:
    async def _whoami(request: Request) -> JSONResponse:
        return JSONResponse({"owner_id": request.state.owner_id, "email": request.state.email})

    async def _open(request: Request) -> JSONResponse:
        return JSONResponse({"owner_id": getattr(request.state, "owner_id", None)})

    app = Starlette(
        routes=[
            Route("/api/v1/credits", _whoami),
            Route("/api/v1/health", _open),
            Route("/api/v1/billing/webhooks", _open, methods=["POST"]),
        ]
    )
    app.add_middleware(AuthenticationMiddleware, settings=settings or _settings())
    return app


def _bearer(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


async def _get(app: Starlette, path: str, headers: dict[str, str] | None = None, method: str = "GET"):
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        return await ac.request(method, path, headers=headers)


# ---------------------------------------------------------------------------
# Public paths
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
@pytest.mark.parametrize(("path", "method"), [("/api/v1/health", "GET"), ("/api/v1/billing/webhooks", "POST")])
async def test_public_paths_skip_auth(path: str, method: str) -> None:
    resp = await _get(_make_app(), path, method=method)

    assert resp.status_code == 200
    assert resp.json() == {"owner_id": None}


# ---------------------------------------------------------------------------
# Development tokens
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_valid_token_sets_owner() -> None:
    token = TokenManager(SecretStr(SECRET)).generate_token("user-42", email="u@example.com")

    resp = await _get(_make_app(), "/api/v1/credits", _bearer(token))

    assert resp.status_code == 200
    assert resp.json() == {"owner_id": "user-42", "email": "u@example.com"}


@pytest.mark.asyncio
async def test_missing_header() -> None:
    resp = await _get(_make_app(), "/api/v1/credits")

    assert resp.status_code == 401
    assert resp.json()["detail"] == "Authentication required"


@pytest.mark.asyncio
async def test_non_bearer_scheme() -> None:
    resp = await _get(_make_app(), "/api/v1/credits", {"Authorization": "Basic dXNlcjpwYXNz"})

    assert resp.status_code == 401
    assert "Bearer" in resp.json()["detail"]


@pytest.mark.asyncio
async def test_forged_token() -> None:
    token = TokenManager(SecretStr("wrong-secret")).generate_token("user-42")

    resp = await _get(_make_app(), "/api/v1/credits", _bearer(token))

    assert resp.status_code == 401
    assert resp.json()["detail"] == "Authentication failed"


@pytest.mark.asyncio
async def test_expired_token_is_403() -> None:
    token = TokenManager(SecretStr(SECRET)).generate_token("user-42", ttl_seconds=-1)

    resp = await _get(_make_app(), "/api/v1/credits", _bearer(token))

    assert resp.status_code == 403
    assert resp.json()["detail"] == "Token has expired"


@pytest.mark.asyncio
async def test_opaque_token_without_provider() -> None:
    resp = await _get(_make_app(), "/api/v1/credits", _bearer("opaque"))
    assert resp.status_code == 401


# ---------------------------------------------------------------------------
# Remote identity provider
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_remote_token_resolved() -> None:
    provider = AsyncMock()
    provider.resolve = AsyncMock(return_value=TokenClaims(sub="uuid-7", email="r@example.com"))
    app = _make_app(_settings(auth_provider_url="https://auth.example.com"))

    with patch("api.dependencies.get_identity_provider", return_value=provider):
        resp = await _get(app, "/api/v1/credits", _bearer("opaque"))

    assert resp.status_code == 200
    assert resp.json()["owner_id"] == "uuid-7"
    provider.resolve.assert_awaited_once_with("opaque")


@pytest.mark.asyncio
async def test_remote_provider_down_is_503() -> None:
    provider = AsyncMock()
    provider.resolve = AsyncMock(side_effect=IdentityProviderUnavailable("timeout"))
    app = _make_app(_settings(auth_provider_url="https://auth.example.com"))

    with patch("api.dependencies.get_identity_provider", return_value=provider):
        resp = await _get(app, "/api/v1/credits", _bearer("opaque"))

    assert resp.status_code == 503


@pytest.mark.asyncio
async def test_remote_provider_not_initialised_is_503() -> None:
    app = _make_app(_settings(auth_provider_url="https://auth.example.com"))

    with patch("api.dependencies.get_identity_provider", return_value=None):
        resp = await _get(app, "/api/v1/credits", _bearer("opaque"))

    assert resp.status_code == 503


# ---------------------------------------------------------------------------
# Secret resolution
# ---------------------------------------------------------------------------


def test_secret_from_settings() -> None:
    assert resolve_token_secret(_settings()).get_secret_value() == SECRET


def test_secret_falls_back_to_env(monkeypatch) -> None:
    monkeypatch.setenv("JWT_SECRET", "from-env")
    assert resolve_token_secret(_settings(auth_secret=SecretStr(""))).get_secret_value() == "from-env"


def test_dev_generates_random_secret(monkeypatch) -> None:
    monkeypatch.delenv("JWT_SECRET", raising=False)
    secret = resolve_token_secret(_settings(auth_secret=SecretStr("")))
    assert secret.get_secret_value().startswith("dev-")


def test_production_requires_secret(monkeypatch) -> None:
    monkeypatch.delenv("JWT_SECRET", raising=False)
    settings = _settings(auth_secret=SecretStr(""), platform_env=PlatformEnv.PRODUCTION)

    with pytest.raises(RuntimeError, match="must be set"):
        resolve_token_secret(settings)
