"""
Rate limiting primitives: token bucket and fixed window.

- Backed by the shared counter store (Redis or process-local).
- Fails open: when the store is unreachable the request is allowed and a
  warning is logged. Throttling is an availability guard, not a quota.
- Middleware policy defaults are safe (disabled unless enabled via env).
"""

import logging
import math
import time
from dataclasses import dataclass
from typing import Callable, Optional

from marketplace.core.config import settings
from marketplace.core.counter_store import CounterStore, CounterStoreUnavailableError

logger = logging.getLogger("marketplace.ratelimit")

FAIL_OPEN_RESET_SECONDS = 60


@dataclass
class RateLimitConfig:
    enabled: bool = False
    per_minute_default: int = 120
    burst_default: int = 30


@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    remaining: int
    limit: int
    reset_at: int  # epoch seconds


class RateLimiter:
    """Token-bucket and fixed-window checks against a CounterStore."""

    def __init__(
        self,
        store: CounterStore,
        *,
        time_fn: Callable[[], float] = time.time,
        bucket_ttl_seconds: Optional[int] = None,
    ):
        self.store = store
        self.time_fn = time_fn
        self.bucket_ttl_seconds = bucket_ttl_seconds or settings.RATE_LIMIT_BUCKET_TTL_SECONDS

    def check_rate_limit(self, key: str, max_tokens: int, refill_rate: float) -> RateLimitResult:
        """Token bucket: one token per request, refilled at refill_rate tokens/second.

        Bucket state is written on every check, denied or not, so the refill
        clock always advances.
        """
        if max_tokens < 1:
            raise ValueError("max_tokens must be >= 1")
        if refill_rate < 0:
            raise ValueError("refill_rate must be >= 0")

        now = self.time_fn()
        try:
            allowed, tokens = self.store.token_bucket(
                f"rate:{key}", max_tokens, refill_rate, now, self.bucket_ttl_seconds
            )
        except CounterStoreUnavailableError as exc:
            logger.warning(
                "[ratelimit] store unavailable, failing open",
                extra={"key": key, "error_code": "infra_unavailable", "reason": str(exc)},
            )
            return RateLimitResult(
                allowed=True,
                remaining=max_tokens,
                limit=max_tokens,
                reset_at=int(now + FAIL_OPEN_RESET_SECONDS),
            )

        if refill_rate > 0:
            reset_at = int(math.floor(now + 1 / refill_rate))
        else:
            reset_at = int(now + self.bucket_ttl_seconds)

        if not allowed:
            logger.info("[ratelimit] BLOCK", extra={"key": key, "reason_code": "token_bucket"})

        return RateLimitResult(
            allowed=allowed,
            remaining=int(math.floor(tokens)),
            limit=max_tokens,
            reset_at=reset_at,
        )

    def check_fixed_window(self, key: str, limit: int, window_seconds: int) -> RateLimitResult:
        """Fixed window: at most `limit` requests per aligned window of window_seconds."""
        if limit < 0:
            raise ValueError("limit must be >= 0")
        if window_seconds < 1:
            raise ValueError("window_seconds must be >= 1")

        now = self.time_fn()
        window = int(now // window_seconds)
        reset_at = (window + 1) * window_seconds
        try:
            count = self.store.incr_window(f"window:{key}:{window}", window_seconds)
        except CounterStoreUnavailableError as exc:
            logger.warning(
                "[ratelimit] store unavailable, failing open",
                extra={"key": key, "error_code": "infra_unavailable", "reason": str(exc)},
            )
            return RateLimitResult(allowed=True, remaining=limit, limit=limit, reset_at=reset_at)

        allowed = count <= limit
        if not allowed:
            logger.info("[ratelimit] BLOCK", extra={"key": key, "reason_code": "fixed_window"})

        return RateLimitResult(
            allowed=allowed,
            remaining=max(0, limit - count),
            limit=limit,
            reset_at=reset_at,
        )


def build_rate_limit_config_from_env(env: dict) -> RateLimitConfig:
    def _bool(name: str, default: bool) -> bool:
        raw = env.get(name)
        if raw is None:
            return default
        return str(raw).lower() in {"1", "true", "yes", "on"}

    def _int(name: str, default: int) -> int:
        raw = env.get(name)
        if raw is None:
            return default
        try:
            value = int(raw)
            return value if value > 0 else default
        except (TypeError, ValueError):
            return default

    return RateLimitConfig(
        enabled=_bool("RATE_LIMIT_ENABLED", settings.RATE_LIMIT_ENABLED),
        per_minute_default=_int("RATE_LIMIT_PER_MINUTE_DEFAULT", settings.RATE_LIMIT_PER_MINUTE_DEFAULT),
        burst_default=_int("RATE_LIMIT_BURST_DEFAULT", settings.RATE_LIMIT_BURST_DEFAULT),
    )
