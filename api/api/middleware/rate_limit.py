"""Rate-limiting middleware -- sliding-window, per-owner and per-IP.

Keeps an in-memory sliding window per client:

- Authenticated requests are keyed by the ``owner_id`` set by the auth
  middleware, so one owner shares a budget across source addresses.
- Unauthenticated requests (webhooks, health) fall back to the client IP.
- The analyze endpoints carry their own lower budget because every call
  there spends upstream compute.

.. warning:: **Single-replica limitation**

   Counters live in process memory.  Each replica enforces its own budget
   and a restart resets every window.  A shared store (Redis sorted sets)
   can replace :class:`SlidingWindowCounter` without touching the
   middleware, which only relies on ``hit()`` and ``time_until_reset()``.
"""

from __future__ import annotations

import asyncio
import fnmatch
import logging
import time
from collections import deque
from typing import Any

from pydantic import BaseModel, Field
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

from api.config import APISettings

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


class RateLimitConfig(BaseModel):
    """Rate-limiting configuration parameters.

    Attributes:
        enabled: Master toggle.  When ``False`` the middleware is a
            pass-through.
        default_requests_per_minute: Baseline budget per client.
        burst_multiplier: Multiplier applied to every per-minute limit.
        expensive_endpoints: ``fnmatch`` path patterns mapped to lower
            per-minute limits.
        exempt_paths: Paths that bypass rate limiting entirely.
    """

    enabled: bool = True
    default_requests_per_minute: int = 60
    burst_multiplier: float = 1.0
    expensive_endpoints: dict[str, int] = Field(
        default_factory=lambda: {
            "/api/v1/analyze*": 30,
            "/api/v1/billing/redeem-coupon": 10,
        }
    )
    exempt_paths: set[str] = Field(default_factory=lambda: {"/api/v1/health", "/ready"})

    @classmethod
    def from_settings(cls, settings: APISettings) -> RateLimitConfig:
        """Build a config from the API settings."""
        return cls(
            enabled=settings.rate_limit_enabled,
            default_requests_per_minute=settings.rate_limit_requests_per_minute,
            burst_multiplier=settings.rate_limit_burst_multiplier,
            expensive_endpoints={
                "/api/v1/analyze*": settings.rate_limit_analyze_per_minute,
                "/api/v1/billing/redeem-coupon": 10,
            },
        )


# ---------------------------------------------------------------------------
# Sliding window counter
# ---------------------------------------------------------------------------

_WINDOW_SECONDS: float = 60.0


class SlidingWindowCounter:
    """Asyncio-safe sliding window request counter.

    Each key maps to a deque of monotonic timestamps.  :meth:`hit` prunes
    entries older than the window before appending, and drops keys that
    have gone idle so memory stays bounded by the active client count.
    """

    def __init__(self, window_seconds: float = _WINDOW_SECONDS) -> None:
        self._window: float = window_seconds
        self._buckets: dict[str, deque[float]] = {}
        self._lock: asyncio.Lock = asyncio.Lock()

    def _prune(self, bucket: deque[float], now: float) -> None:
        cutoff = now - self._window
        while bucket and bucket[0] <= cutoff:
            bucket.popleft()

    async def hit(self, key: str) -> int:
        """Record a request for *key* and return the count inside the window."""
        now = time.monotonic()
        async with self._lock:
            bucket = self._buckets.setdefault(key, deque())
            self._prune(bucket, now)
            bucket.append(now)
            self._sweep(now)
            return len(bucket)

    async def count(self, key: str) -> int:
        """Return the current count without recording a hit."""
        now = time.monotonic()
        async with self._lock:
            bucket = self._buckets.get(key)
            if bucket is None:
                return 0
            self._prune(bucket, now)
            return len(bucket)

    async def time_until_reset(self, key: str) -> float:
        """Seconds until the oldest entry in *key*'s window expires."""
        now = time.monotonic()
        async with self._lock:
            bucket = self._buckets.get(key)
            if not bucket:
                return 0.0
            return max((bucket[0] + self._window) - now, 0.0)

    def _sweep(self, now: float) -> None:
        stale = [key for key, bucket in self._buckets.items() if bucket and bucket[-1] <= now - self._window]
        for key in stale:
            del self._buckets[key]
        if stale:
            logger.debug("Rate-limit cleanup removed %d stale keys", len(stale))

    def __len__(self) -> int:
        return len(self._buckets)


# ---------------------------------------------------------------------------
# Middleware
# ---------------------------------------------------------------------------


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Starlette middleware enforcing per-client sliding-window limits.

    Decorates responses with ``X-RateLimit-Limit``, ``X-RateLimit-Remaining``
    and ``X-RateLimit-Reset`` and answers ``429`` with ``Retry-After`` once
    a client exceeds its budget.
    """

    def __init__(self, app: Any, config: RateLimitConfig | None = None) -> None:
        super().__init__(app)
        self._config: RateLimitConfig = config or RateLimitConfig()
        self._counter: SlidingWindowCounter = SlidingWindowCounter()
        logger.info(
            "RateLimitMiddleware initialised (enabled=%s, rpm=%d, burst=%.1fx)",
            self._config.enabled,
            self._config.default_requests_per_minute,
            self._config.burst_multiplier,
        )

    def _client_key(self, request: Request) -> str:
        owner_id: str | None = getattr(request.state, "owner_id", None)
        if owner_id:
            return f"owner:{owner_id}"
        ip = request.client.host if request.client else "unknown"
        return f"ip:{ip}"

    def _limit_for_path(self, path: str) -> tuple[str, int]:
        """Return ``(bucket, per-minute limit)`` for *path*.

        The bucket is the matching expensive-endpoint pattern, or
        ``"default"`` for the general budget.  A limit of ``0`` means exempt.
        """
        if path in self._config.exempt_paths:
            return "exempt", 0
        for pattern, limit in self._config.expensive_endpoints.items():
            if path == pattern or fnmatch.fnmatch(path, pattern):
                return pattern, limit
        return "default", self._config.default_requests_per_minute

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        if not self._config.enabled:
            return await call_next(request)

        path = request.url.path
        bucket, base_limit = self._limit_for_path(path)
        if base_limit == 0:
            return await call_next(request)

        burst_limit = max(int(base_limit * self._config.burst_multiplier), 1)
        client_key = self._client_key(request)
        counter_key = f"{client_key}:{bucket}"

        current_count = await self._counter.hit(counter_key)

        if current_count > burst_limit:
            retry_after = max(int(await self._counter.time_until_reset(counter_key)) + 1, 1)
            logger.warning(
                "Rate limit exceeded: key=%s path=%s count=%d limit=%d",
                client_key,
                path,
                current_count,
                burst_limit,
            )
            return JSONResponse(
                status_code=429,
                content={"detail": "Rate limit exceeded. Try again later.", "retry_after": retry_after},
                headers={
                    "Retry-After": str(retry_after),
                    "X-RateLimit-Limit": str(burst_limit),
                    "X-RateLimit-Remaining": "0",
                    "X-RateLimit-Reset": str(retry_after),
                },
            )

        response = await call_next(request)

        reset = max(int(await self._counter.time_until_reset(counter_key)) + 1, 1)
        response.headers["X-RateLimit-Limit"] = str(burst_limit)
        response.headers["X-RateLimit-Remaining"] = str(max(burst_limit - current_count, 0))
        response.headers["X-RateLimit-Reset"] = str(reset)
        return response
