"""Bearer-token verification.

Two token sources are supported:

* **Development tokens** (``bmdev.<payload>.<signature>``): a base64 JSON
  payload signed with HMAC-SHA256 over the raw JSON.  Used for local runs,
  tests, and service-to-service calls that share the secret.
* **Remote identity provider**: any other bearer token is resolved by
  calling the provider's user endpoint (``GET {base_url}/auth/v1/user``),
  which answers with the verified user's id and email.

Both paths produce :class:`TokenClaims`; the ledger only ever sees
``claims.sub`` as the opaque owner id.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
import logging
import time
import uuid
from typing import Any

import httpx
from pydantic import BaseModel, Field, SecretStr, ValidationError

logger = logging.getLogger(__name__)

DEV_TOKEN_PREFIX = "bmdev."


class TokenClaims(BaseModel):
    """Verified identity extracted from a bearer token."""

    sub: str = Field(..., min_length=1, description="Opaque owner id.")
    email: str | None = None
    iss: str | None = None
    iat: float | None = None
    exp: float | None = None
    jti: str | None = None
    scopes: list[str] = Field(default_factory=list)


class TokenManager:
    """Issue and validate HMAC-signed development tokens.

    Parameters
    ----------
    secret:
        Shared HMAC secret.
    issuer:
        Value written to and expected in the ``iss`` claim.
    """

    def __init__(self, secret: SecretStr, *, issuer: str = "ledger") -> None:
        if not secret.get_secret_value():
            raise ValueError("Token secret must not be empty")
        self._secret = secret
        self._issuer = issuer

    def _sign(self, payload_json: str) -> str:
        return hmac.new(
            self._secret.get_secret_value().encode("utf-8"),
            payload_json.encode("utf-8"),
            hashlib.sha256,
        ).hexdigest()

    def generate_token(
        self,
        sub: str,
        *,
        email: str | None = None,
        ttl_seconds: int = 3600,
        scopes: list[str] | None = None,
    ) -> str:
        """Return a signed development token for *sub*."""
        now = time.time()
        payload: dict[str, Any] = {
            "sub": sub,
            "email": email,
            "iss": self._issuer,
            "iat": now,
            "exp": now + ttl_seconds,
            "jti": uuid.uuid4().hex,
            "scopes": scopes or ["read", "write"],
        }
        payload_json = json.dumps(payload)
        encoded = base64.urlsafe_b64encode(payload_json.encode("utf-8")).decode("ascii")
        return f"{DEV_TOKEN_PREFIX}{encoded}.{self._sign(payload_json)}"

    def validate_token(self, token: str) -> TokenClaims:
        """Verify signature and expiry of a development token.

        Raises
        ------
        PermissionError
            The token is malformed, carries a bad signature, or has expired.
        """
        if not token.startswith(DEV_TOKEN_PREFIX):
            raise PermissionError("unsupported token format")
        body = token[len(DEV_TOKEN_PREFIX) :]
        encoded, _, signature = body.rpartition(".")
        if not encoded or not signature:
            raise PermissionError("malformed token")

        try:
            payload_json = base64.urlsafe_b64decode(encoded.encode("ascii")).decode("utf-8")
        except (binascii.Error, UnicodeDecodeError, ValueError) as exc:
            raise PermissionError("malformed token") from exc

        if not hmac.compare_digest(self._sign(payload_json), signature):
            raise PermissionError("signature mismatch")

        try:
            claims = TokenClaims.model_validate(json.loads(payload_json))
        except (ValueError, ValidationError) as exc:
            raise PermissionError("malformed claims") from exc

        if claims.exp is not None and claims.exp < time.time():
            raise PermissionError("token expired")
        if claims.iss is not None and claims.iss != self._issuer:
            raise PermissionError("unexpected issuer")
        return claims


class IdentityProviderUnavailable(Exception):
    """The remote identity provider could not be reached."""


class RemoteIdentityProvider:
    """Resolve opaque bearer tokens against a hosted auth service.

    Parameters
    ----------
    base_url:
        Root URL of the identity provider.
    api_key:
        Project API key sent as the ``apikey`` header.
    timeout:
        Per-request timeout in seconds.
    transport:
        Optional httpx transport (used by tests).
    """

    def __init__(
        self,
        base_url: str,
        api_key: SecretStr,
        timeout: float = 5.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        headers: dict[str, str] = {}
        if api_key.get_secret_value():
            headers["apikey"] = api_key.get_secret_value()
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            timeout=httpx.Timeout(timeout),
            headers=headers,
            transport=transport,
        )

    async def resolve(self, token: str) -> TokenClaims:
        """Return the claims for *token*.

        Raises
        ------
        PermissionError
            The provider rejected the token.
        IdentityProviderUnavailable
            The provider could not be reached or answered with a 5xx.
        """
        try:
            response = await self._client.get("/auth/v1/user", headers={"Authorization": f"Bearer {token}"})
        except httpx.RequestError as exc:
            logger.warning("Identity provider request failed: %s", exc)
            raise IdentityProviderUnavailable(str(exc)) from exc

        if response.status_code >= 500:
            logger.warning("Identity provider returned %d", response.status_code)
            raise IdentityProviderUnavailable(f"status {response.status_code}")
        if response.status_code != 200:
            raise PermissionError("token rejected by identity provider")

        data = response.json()
        user_id = data.get("id")
        if not user_id:
            raise PermissionError("identity provider returned no user id")
        return TokenClaims(sub=str(user_id), email=data.get("email"))

    async def close(self) -> None:
        """Close the underlying HTTP connection pool."""
        await self._client.aclose()
