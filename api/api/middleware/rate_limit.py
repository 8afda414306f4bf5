"""Rate-limiting middleware -- sliding-window, per-tenant.

Public order intake and LINE webhooks are keyed by the tenant slug in the
path; host routes by the authenticated tenant id.  A malformed slug, and
anything else, falls back to the client IP.  Per-route thresholds are
``fnmatch`` globs over the request path, each tracked in its own window.

.. warning:: **Single-replica limitation**

   Counters live in process memory.  Each replica enforces its own budget
   and a restart resets every window.  A shared store (Redis sorted sets)
   can replace :class:`SlidingWindowCounter` behind the same ``hit`` /
   ``time_until_reset`` API.
"""

from __future__ import annotations

import asyncio
import fnmatch
import logging
import re
import time
from collections import deque
from typing import Any

from groupbuy_core.tenancy import is_valid_slug
from pydantic import BaseModel
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

from api.errors import error_response

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


class RateLimitConfig(BaseModel):
    """Rate-limiting configuration parameters.

    Attributes:
        enabled: Master toggle.  When ``False`` the middleware is a
            pass-through.
        default_requests_per_minute: Budget for routes without their own
            threshold.
        burst_multiplier: Multiplier applied to every per-minute limit to
            absorb short spikes.
        route_limits: ``fnmatch`` path globs mapped to per-minute limits.
        exempt_paths: Paths that bypass rate limiting entirely.
    """

    enabled: bool = True
    default_requests_per_minute: int = 120
    burst_multiplier: float = 1.5
    route_limits: dict[str, int] = {}
    exempt_paths: set[str] = {"/api/health", "/ready", "/metrics"}


# ---------------------------------------------------------------------------
# Sliding window counter
# ---------------------------------------------------------------------------

_WINDOW_SECONDS: float = 60.0
_CLEANUP_INTERVAL_SECONDS: float = 60.0


class SlidingWindowCounter:
    """Asyncio-safe sliding window request counter.

    Each key maps to a deque of monotonic timestamps.  :meth:`hit` prunes
    entries older than the window before appending.  A background task
    drops keys that have gone idle.
    """

    def __init__(self, window_seconds: float = _WINDOW_SECONDS) -> None:
        self._window: float = window_seconds
        self._buckets: dict[str, deque[float]] = {}
        self._lock: asyncio.Lock = asyncio.Lock()
        self._cleanup_task: asyncio.Task[None] | None = None
        self._running: bool = False

    @property
    def running(self) -> bool:
        return self._running

    def start(self) -> None:
        """Launch the periodic cleanup coroutine (needs a running loop)."""
        if self._running:
            return
        self._running = True
        self._cleanup_task = asyncio.get_running_loop().create_task(self._cleanup_loop())

    async def stop(self) -> None:
        self._running = False
        if self._cleanup_task is not None:
            self._cleanup_task.cancel()
            try:
                await self._cleanup_task
            except asyncio.CancelledError:
                pass
            self._cleanup_task = None

    async def hit(self, key: str) -> int:
        """Record a request for *key* and return the count inside the window."""
        now = time.monotonic()
        cutoff = now - self._window
        async with self._lock:
            bucket = self._buckets.setdefault(key, deque())
            while bucket and bucket[0] <= cutoff:
                bucket.popleft()
            bucket.append(now)
            return len(bucket)

    async def time_until_reset(self, key: str) -> float:
        """Seconds until the oldest entry in *key*'s window expires."""
        now = time.monotonic()
        async with self._lock:
            bucket = self._buckets.get(key)
            if not bucket:
                return 0.0
            return max((bucket[0] + self._window) - now, 0.0)

    async def _cleanup_loop(self) -> None:
        while self._running:
            await asyncio.sleep(_CLEANUP_INTERVAL_SECONDS)
            cutoff = time.monotonic() - self._window
            async with self._lock:
                stale_keys: list[str] = []
                for key, bucket in self._buckets.items():
                    while bucket and bucket[0] <= cutoff:
                        bucket.popleft()
                    if not bucket:
                        stale_keys.append(key)
                for key in stale_keys:
                    del self._buckets[key]
            if stale_keys:
                logger.debug("Rate-limit cleanup removed %d stale keys", len(stale_keys))


# ---------------------------------------------------------------------------
# Middleware
# ---------------------------------------------------------------------------

_SLUG_PATH_RE = re.compile(r"^/api/(?:public|webhooks/line)/([^/]+)")


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Per-tenant sliding-window rate limits.

    Must run inside :class:`~api.middleware.auth.HostAuthenticationMiddleware`
    so ``request.state.tenant_id`` is populated for host routes.  Responses
    carry ``X-RateLimit-*`` headers; a client over budget gets the
    ``RATE_LIMITED`` envelope with ``Retry-After``.
    """

    def __init__(self, app: Any, config: RateLimitConfig | None = None) -> None:
        super().__init__(app)
        self._config: RateLimitConfig = config or RateLimitConfig()
        self._counter: SlidingWindowCounter = SlidingWindowCounter()
        logger.info(
            "RateLimitMiddleware initialised (enabled=%s, rpm=%d, burst=%.1fx, routes=%d)",
            self._config.enabled,
            self._config.default_requests_per_minute,
            self._config.burst_multiplier,
            len(self._config.route_limits),
        )

    @staticmethod
    def _client_key(request: Request) -> str:
        match = _SLUG_PATH_RE.match(request.url.path)
        if match and is_valid_slug(match.group(1)):
            return f"tenant:{match.group(1)}"
        tenant_id: str | None = getattr(request.state, "tenant_id", None)
        if tenant_id:
            return f"tenant-id:{tenant_id}"
        ip = request.client.host if request.client else "unknown"
        return f"ip:{ip}"

    def _limit_for_path(self, path: str) -> tuple[str, int]:
        """Return ``(tier, per-minute limit)`` for *path*; limit 0 means exempt."""
        if path in self._config.exempt_paths:
            return ("exempt", 0)
        for pattern, limit in self._config.route_limits.items():
            if fnmatch.fnmatchcase(path, pattern):
                return (pattern, limit)
        return ("default", self._config.default_requests_per_minute)

    def _effective_burst_limit(self, base_limit: int) -> int:
        return max(int(base_limit * self._config.burst_multiplier), 1)

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        if not self._config.enabled:
            return await call_next(request)
        if not self._counter.running:
            self._counter.start()

        path = request.url.path
        tier, base_limit = self._limit_for_path(path)
        if base_limit == 0:
            return await call_next(request)

        burst_limit = self._effective_burst_limit(base_limit)
        client_key = self._client_key(request)
        counter_key = f"{client_key}:{tier}"

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
            return error_response(
                request,
                "RATE_LIMITED",
                "Rate limit exceeded. Try again later.",
                headers={
                    "Retry-After": str(retry_after),
                    "X-RateLimit-Limit": str(burst_limit),
                    "X-RateLimit-Remaining": "0",
                    "X-RateLimit-Reset": str(retry_after),
                },
            )

        response = await call_next(request)

        reset_int = max(int(await self._counter.time_until_reset(counter_key)) + 1, 1)
        response.headers["X-RateLimit-Limit"] = str(burst_limit)
        response.headers["X-RateLimit-Remaining"] = str(max(burst_limit - current_count, 0))
        response.headers["X-RateLimit-Reset"] = str(reset_int)
        return response
