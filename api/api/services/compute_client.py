"""HTTP client for the OpenAI-compatible image analysis endpoint."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Any

import httpx
from pydantic import SecretStr

logger = logging.getLogger(__name__)

DEFAULT_SYSTEM_PROMPT = (
    "You are a helpful AI assistant that creates engaging social media comments and responses.\n"
    "Your responses should be:\n"
    "- Friendly and conversational\n"
    "- Relevant to the content shown\n"
    "- Concise (1-3 sentences usually)\n"
    "- Appropriate for the platform context\n"
    "Never use quotation marks around your response."
)
DEFAULT_PROMPT = "Please analyze this image and provide an appropriate response."

_TEMPERATURE = 0.7

# ---------------------------------------------------------------------------
# Prompt injection sanitization
# ---------------------------------------------------------------------------

_PROMPT_INJECTION_PATTERNS = re.compile(
    r"<\|system\|>|<\|user\|>|<\|assistant\|>|"
    r"\[INST\]|\[/INST\]|"
    r"<<SYS>>|<</SYS>>|"
    r"<\|im_start\|>|<\|im_end\|>",
    re.IGNORECASE,
)
_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f]")  # Keep \n, \t, \r


def _sanitize_prompt(value: str) -> str:
    """Strip control characters and chat-template delimiters from *value*."""
    cleaned = _CONTROL_CHARS.sub("", value)
    return _PROMPT_INJECTION_PATTERNS.sub("[FILTERED]", cleaned)


# ---------------------------------------------------------------------------
# Results and errors
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ComputeResult:
    """Text produced by one completion call."""

    text: str
    tokens_used: int
    request_id: str | None = None


class ComputeError(Exception):
    """The compute endpoint failed or answered with something unusable.

    ``status_code`` is the upstream HTTP status, or ``None`` for transport
    failures.  ``timed_out`` is set when the per-request timeout fired.
    """

    def __init__(self, message: str, *, status_code: int | None = None, timed_out: bool = False) -> None:
        self.status_code = status_code
        self.timed_out = timed_out
        super().__init__(message)


class ComputeClient:
    """Thin async wrapper around ``POST /chat/completions``.

    Unlike a best-effort advisory client, failures raise
    :class:`ComputeError`: the caller must know that nothing was produced so
    that no credit is deducted.

    Parameters
    ----------
    base_url:
        Root URL of the compute API (e.g. ``https://api.openai.com/v1``).
    api_key:
        Platform API key.  A caller-supplied key passed to :meth:`analyze`
        takes precedence for that request.
    model:
        Default model name.
    timeout:
        Per-request timeout in seconds.
    transport:
        Optional httpx transport (used by tests).
    """

    def __init__(
        self,
        base_url: str,
        api_key: SecretStr,
        model: str = "gpt-4o-mini",
        timeout: float = 7.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._api_key = api_key
        self._model = model
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            timeout=httpx.Timeout(timeout),
            headers={"Content-Type": "application/json"},
            transport=transport,
        )

    async def analyze(
        self,
        image_data_url: str,
        *,
        context: str | None = None,
        system_prompt: str | None = None,
        owner_id: str | None = None,
        api_key: str | None = None,
        model: str | None = None,
        max_tokens: int = 150,
        detail: str = "low",
    ) -> ComputeResult:
        """Describe one image and return the generated reply.

        Parameters
        ----------
        image_data_url:
            Validated ``data:image/...;base64,`` URL.
        context:
            User text sent alongside the image; defaults to a generic prompt.
        system_prompt:
            Overrides the default system prompt.
        owner_id:
            Forwarded as the ``user`` field for upstream abuse monitoring.
        api_key:
            Caller-supplied key used instead of the platform key.

        Raises
        ------
        ComputeError
            On transport failure, timeout, non-2xx status, or a response
            without a message.
        """
        payload: dict[str, Any] = {
            "model": model or self._model,
            "messages": [
                {"role": "system", "content": _sanitize_prompt(system_prompt or DEFAULT_SYSTEM_PROMPT)},
                {
                    "role": "user",
                    "content": [
                        {"type": "text", "text": _sanitize_prompt(context or DEFAULT_PROMPT)},
                        {"type": "image_url", "image_url": {"url": image_data_url, "detail": detail}},
                    ],
                },
            ],
            "max_tokens": max_tokens,
            "temperature": _TEMPERATURE,
        }
        if owner_id is not None:
            payload["user"] = owner_id

        data = await self._post("/chat/completions", payload, api_key=api_key)
        try:
            text = data["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError) as exc:
            raise ComputeError("compute response carried no message") from exc
        if not isinstance(text, str):
            raise ComputeError("compute response carried no message")

        usage = data.get("usage") or {}
        return ComputeResult(
            text=text,
            tokens_used=int(usage.get("total_tokens") or 0),
            request_id=data.get("id"),
        )

    # -- Lifecycle -----------------------------------------------------------

    async def health_check(self) -> bool:
        """Return ``True`` if the compute API answers its model listing."""
        try:
            resp = await self._client.get("/models", headers=self._auth_headers(None))
            return resp.status_code == 200
        except httpx.HTTPError:
            return False

    async def close(self) -> None:
        """Close the underlying HTTP connection pool."""
        await self._client.aclose()

    # -- Internal helpers ----------------------------------------------------

    def _auth_headers(self, api_key: str | None) -> dict[str, str]:
        key = api_key or self._api_key.get_secret_value()
        return {"Authorization": f"Bearer {key}"} if key else {}

    async def _post(self, path: str, payload: dict[str, Any], *, api_key: str | None) -> dict[str, Any]:
        try:
            response = await self._client.post(path, json=payload, headers=self._auth_headers(api_key))
            response.raise_for_status()
            return response.json()
        except httpx.TimeoutException as exc:
            logger.warning("Compute request to %s timed out", path)
            raise ComputeError("compute request timed out", timed_out=True) from exc
        except httpx.HTTPStatusError as exc:
            logger.warning(
                "Compute endpoint returned %d for %s: %s",
                exc.response.status_code,
                path,
                exc.response.text[:500],
            )
            raise ComputeError(
                f"compute endpoint returned {exc.response.status_code}",
                status_code=exc.response.status_code,
            ) from exc
        except httpx.RequestError as exc:
            logger.warning("Compute request to %s failed: %s", path, str(exc))
            raise ComputeError("compute request failed") from exc
        except ValueError as exc:
            logger.warning("Compute endpoint returned a non-JSON body for %s", path)
            raise ComputeError("compute response was not JSON") from exc
