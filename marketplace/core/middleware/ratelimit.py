import os
import time
from dataclasses import dataclass
from typing import Callable, Optional

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from marketplace.core.counter_store import get_counter_store
from marketplace.core.errors import RateLimitError, app_error_handler
from marketplace.core.logging import get_request_id
from marketplace.core.ratelimit import RateLimiter, RateLimitConfig, build_rate_limit_config_from_env

MUTATION_METHODS = {"POST", "PUT", "PATCH", "DELETE"}
EXEMPT_PATHS = {"/healthz", "/readyz"}


@dataclass
class RoutePolicy:
    per_minute: int
    burst: int


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Per-client token-bucket throttling in front of every route (opt-in via env)."""

    def __init__(self, app, *, config: Optional[RateLimitConfig] = None, env: Optional[dict] = None, limiter: Optional[RateLimiter] = None, time_fn: Callable[[], float] = time.time):
        super().__init__(app)
        self.config = config or build_rate_limit_config_from_env(env or os.environ)
        self.time_fn = time_fn
        self._limiter = limiter

    @property
    def limiter(self) -> RateLimiter:
        if self._limiter is not None:
            return self._limiter
        # Resolved per request so a store swapped at startup is picked up
        return RateLimiter(get_counter_store(), time_fn=self.time_fn)

    def _policy_for_request(self, request: Request) -> Optional[RoutePolicy]:
        if request.url.path in EXEMPT_PATHS:
            return None

        # Stricter for mutations (usage tracking, cancellation, adjustments)
        if request.method.upper() in MUTATION_METHODS:
            per_minute = max(1, int(self.config.per_minute_default * 0.5))
            burst = max(1, int(self.config.burst_default * 0.5))
            return RoutePolicy(per_minute=per_minute, burst=burst)

        return RoutePolicy(per_minute=self.config.per_minute_default, burst=self.config.burst_default)

    def _client_key(self, request: Request, category: str) -> str:
        user_id = request.headers.get("X-User-Id")
        if not user_id:
            auth = request.headers.get("Authorization")
            if auth:
                # Stable prefix of the credential; never logged
                user_id = auth[:16]
        if user_id:
            return f"user:{user_id}:{category}"

        forwarded = request.headers.get("x-forwarded-for")
        ip = forwarded.split(",")[0].strip() if forwarded else (request.client.host if request.client else "unknown")
        return f"ip:{ip}:{category}"

    async def dispatch(self, request: Request, call_next):
        if not self.config.enabled:
            return await call_next(request)

        policy = self._policy_for_request(request)
        if not policy:
            return await call_next(request)

        category = "mutation" if request.method.upper() in MUTATION_METHODS else "read"
        key = self._client_key(request, category)

        result = self.limiter.check_rate_limit(key, policy.burst, policy.per_minute / 60.0)
        if result.allowed:
            response = await call_next(request)
            response.headers["X-RateLimit-Limit"] = str(result.limit)
            response.headers["X-RateLimit-Remaining"] = str(result.remaining)
            return response

        rid = getattr(request.state, "request_id", None) or get_request_id()
        response = await app_error_handler(
            request,
            RateLimitError("Rate limit exceeded for this endpoint", request_id=rid),
        )
        retry_after = max(1, int(60 / max(1, policy.per_minute)))
        response.headers["Retry-After"] = str(retry_after)
        response.headers["X-RateLimit-Limit"] = str(result.limit)
        response.headers["X-RateLimit-Remaining"] = "0"
        response.headers["X-RateLimit-Reset"] = str(result.reset_at)
        return response
