"""Fixed-window request limits, per client ip.

A global limit applies to every route; `/oauth/callback` and
`/oauth/disconnect` also count against a much smaller strict limit.
Buckets live in process, one limiter per app.
"""

import logging
import threading
import time
from typing import Optional

from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp

from token_gateway.config import Settings
from token_gateway.metrics import Metrics

log = logging.getLogger(__name__)

STRICT_PATHS = ("/oauth/callback", "/oauth/disconnect")
EXEMPT_PATHS = ("/health", "/version")


class FixedWindowLimiter:
    def __init__(self, max_requests: int, window_s: int):
        self.max_requests = max_requests
        self.window_s = window_s
        self._lock = threading.Lock()
        self._buckets: dict[str, tuple[int, int]] = {}

    def hit(self, key: str, now: Optional[float] = None) -> tuple[bool, int]:
        """Count one request for `key`. Returns (allowed, remaining)."""
        slot = int((time.time() if now is None else now) // self.window_s)
        with self._lock:
            last_slot, count = self._buckets.get(key, (slot, 0))
            if last_slot != slot:
                count = 0
            count += 1
            self._buckets[key] = (slot, count)
        return count <= self.max_requests, max(0, self.max_requests - count)

    def reset_after(self, now: Optional[float] = None) -> int:
        now = time.time() if now is None else now
        return int(self.window_s - now % self.window_s) or self.window_s


class RateLimitMiddleware(BaseHTTPMiddleware):
    def __init__(self, app: ASGIApp, settings: Settings, metrics: Metrics):
        super().__init__(app)
        self.metrics = metrics
        self.general = FixedWindowLimiter(settings.global_rate_limit, settings.rate_limit_window_s)
        self.strict = FixedWindowLimiter(settings.rate_limit_strict_max, settings.rate_limit_window_s)

    async def dispatch(self, request, call_next):
        path = request.url.path
        if request.method == "OPTIONS" or path in EXEMPT_PATHS:
            return await call_next(request)

        # uvicorn resolves X-Forwarded-For from trusted proxies into client.host
        ip = request.client.host if request.client else "unknown"
        allowed, remaining = self.general.hit(ip)
        limiter, scope = self.general, "global"
        if allowed and path in STRICT_PATHS:
            allowed, remaining = self.strict.hit(f"{ip}|{path}")
            limiter, scope = self.strict, "strict"

        if not allowed:
            self.metrics.rate_limited.labels(scope=scope).inc()
            log.warning("rate limit exceeded", extra={"meta": {"path": path, "scope": scope}})
            message = (
                "Rate limit exceeded for sensitive endpoint"
                if scope == "strict"
                else "Too many requests, please try again later"
            )
            return JSONResponse(
                {"error": "rate_limited", "message": message},
                status_code=429,
                headers={"Retry-After": str(limiter.reset_after())},
            )

        response = await call_next(request)
        response.headers["RateLimit-Limit"] = str(limiter.max_requests)
        response.headers["RateLimit-Remaining"] = str(remaining)
        return response
