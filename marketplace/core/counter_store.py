"""
Shared counter store used by the rate limiter and the usage meter.

Two backends implement the same capability:
- RedisCounterStore: shared across instances, atomic via Lua / INCR.
- InMemoryCounterStore: process-local map guarded by a lock. No cross-instance
  consistency: a multi-instance deployment without REDIS_URL under-enforces
  every limit built on it.

The backend is chosen once by build_counter_store(); callers only see the
CounterStore interface. Backend failures surface as
CounterStoreUnavailableError.
"""

import bisect
import logging
import threading
import time
from abc import ABC, abstractmethod
from contextlib import contextmanager
from typing import Callable, Dict, List, Optional, Tuple

from redis import Redis
from redis.exceptions import RedisError

from marketplace.core.config import settings
from marketplace.core.errors import InfraUnavailableError

logger = logging.getLogger("marketplace.counter_store")


class CounterStoreUnavailableError(InfraUnavailableError):
    """The shared counter store could not be reached."""


class CounterStore(ABC):
    """Atomic counter primitives keyed by string."""

    backend = "abstract"

    @abstractmethod
    def token_bucket(
        self, key: str, max_tokens: float, refill_rate: float, now: float, ttl_seconds: int
    ) -> Tuple[bool, float]:
        """Refill, try to take one token, persist state. Returns (allowed, tokens_left)."""

    @abstractmethod
    def incr_window(self, key: str, ttl_seconds: int) -> int:
        """Increment a window counter, setting its expiry on first increment."""

    @abstractmethod
    def incr_float(self, key: str, amount: float, expire_at: int) -> float:
        """Add amount to a float counter expiring at the epoch second expire_at."""

    @abstractmethod
    def incr_float_within(
        self, key: str, amount: float, limit: float, expire_at: int
    ) -> Tuple[bool, float]:
        """Add amount only if the result stays <= limit. Returns (applied, value)."""

    @abstractmethod
    def get_float(self, key: str) -> float:
        ...

    @abstractmethod
    def get(self, key: str) -> Optional[str]:
        ...

    @abstractmethod
    def set(self, key: str, value: str) -> None:
        ...

    @abstractmethod
    def history_add(self, key: str, score: float, member: str, max_entries: int) -> None:
        """Append to a score-ordered set, keeping only the newest max_entries."""

    @abstractmethod
    def history_range(self, key: str, min_score: float, max_score: float) -> List[str]:
        ...

    def ping(self) -> bool:
        return True

    def close(self) -> None:
        return None


# KEYS[1] bucket hash; ARGV: now, max_tokens, refill_rate, ttl
TOKEN_BUCKET_LUA = """
local key = KEYS[1]
local now = tonumber(ARGV[1])
local max_tokens = tonumber(ARGV[2])
local refill_rate = tonumber(ARGV[3])
local ttl = tonumber(ARGV[4])

local state = redis.call('HMGET', key, 'tokens', 'last_refill')
local tokens = tonumber(state[1])
local last_refill = tonumber(state[2])
if tokens == nil or last_refill == nil then
  tokens = max_tokens
  last_refill = now
end

local elapsed = math.max(0, now - last_refill)
tokens = math.min(max_tokens, tokens + (elapsed * refill_rate))

local allowed = 0
if tokens >= 1 then
  tokens = tokens - 1
  allowed = 1
end

redis.call('HSET', key, 'tokens', tostring(tokens), 'last_refill', tostring(now))
redis.call('EXPIRE', key, ttl)
return {allowed, tostring(tokens)}
"""

# KEYS[1] window counter; ARGV: ttl
INCR_WINDOW_LUA = """
local count = redis.call('INCR', KEYS[1])
if count == 1 then
  redis.call('EXPIRE', KEYS[1], ARGV[1])
end
return count
"""

# KEYS[1] counter; ARGV: amount, limit, expire_at
INCR_WITHIN_LUA = """
local current = tonumber(redis.call('GET', KEYS[1]) or '0')
local amount = tonumber(ARGV[1])
local limit = tonumber(ARGV[2])
if current + amount > limit then
  return {0, tostring(current)}
end
local updated = redis.call('INCRBYFLOAT', KEYS[1], amount)
redis.call('EXPIREAT', KEYS[1], ARGV[3])
return {1, updated}
"""


@contextmanager
def _redis_errors(operation: str):
    try:
        yield
    except RedisError as exc:
        raise CounterStoreUnavailableError(f"counter store {operation} failed: {exc}") from exc


class RedisCounterStore(CounterStore):
    backend = "redis"

    def __init__(self, client: Redis):
        self.client = client
        self._token_bucket = client.register_script(TOKEN_BUCKET_LUA)
        self._incr_within = client.register_script(INCR_WITHIN_LUA)
        self._incr_window = client.register_script(INCR_WINDOW_LUA)

    @classmethod
    def from_url(cls, url: str, socket_timeout: float = 0.5) -> "RedisCounterStore":
        client = Redis.from_url(
            url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        return cls(client)

    def token_bucket(self, key, max_tokens, refill_rate, now, ttl_seconds):
        with _redis_errors("token_bucket"):
            allowed, tokens = self._token_bucket(
                keys=[key], args=[now, max_tokens, refill_rate, ttl_seconds]
            )
        return int(allowed) == 1, float(tokens)

    def incr_window(self, key, ttl_seconds):
        with _redis_errors("incr_window"):
            count = self._incr_window(keys=[key], args=[ttl_seconds])
        return int(count)

    def incr_float(self, key, amount, expire_at):
        with _redis_errors("incr_float"):
            pipe = self.client.pipeline(transaction=True)
            pipe.incrbyfloat(key, amount)
            pipe.expireat(key, expire_at)
            value, _ = pipe.execute()
        return float(value)

    def incr_float_within(self, key, amount, limit, expire_at):
        with _redis_errors("incr_float_within"):
            applied, value = self._incr_within(keys=[key], args=[amount, limit, expire_at])
        return int(applied) == 1, float(value)

    def get_float(self, key):
        with _redis_errors("get_float"):
            value = self.client.get(key)
        return float(value) if value is not None else 0.0

    def get(self, key):
        with _redis_errors("get"):
            return self.client.get(key)

    def set(self, key, value):
        with _redis_errors("set"):
            self.client.set(key, value)

    def history_add(self, key, score, member, max_entries):
        with _redis_errors("history_add"):
            pipe = self.client.pipeline(transaction=True)
            pipe.zadd(key, {member: score})
            pipe.zremrangebyrank(key, 0, -(max_entries + 1))
            pipe.execute()

    def history_range(self, key, min_score, max_score):
        with _redis_errors("history_range"):
            return list(self.client.zrangebyscore(key, min_score, max_score))

    def ping(self) -> bool:
        try:
            return bool(self.client.ping())
        except RedisError:
            return False

    def close(self) -> None:
        self.client.close()


class InMemoryCounterStore(CounterStore):
    """Process-local fallback. Every operation runs under one lock."""

    backend = "memory"
    SWEEP_EVERY = 1000

    def __init__(self, time_fn: Callable[[], float] = time.time):
        self.time_fn = time_fn
        self._lock = threading.Lock()
        self._values: Dict[str, object] = {}
        self._expires: Dict[str, float] = {}
        self._ops = 0

    def _alive(self, key: str) -> bool:
        expires_at = self._expires.get(key)
        if expires_at is not None and expires_at <= self.time_fn():
            self._values.pop(key, None)
            self._expires.pop(key, None)
            return False
        return key in self._values

    def _tick(self) -> None:
        self._ops += 1
        if self._ops % self.SWEEP_EVERY:
            return
        now = self.time_fn()
        for key in [k for k, exp in self._expires.items() if exp <= now]:
            self._values.pop(key, None)
            self._expires.pop(key, None)

    def token_bucket(self, key, max_tokens, refill_rate, now, ttl_seconds):
        with self._lock:
            self._tick()
            if self._alive(key):
                tokens, last_refill = self._values[key]
            else:
                tokens, last_refill = float(max_tokens), now
            elapsed = max(0.0, now - last_refill)
            tokens = min(float(max_tokens), tokens + elapsed * refill_rate)
            allowed = tokens >= 1
            if allowed:
                tokens -= 1
            self._values[key] = (tokens, now)
            self._expires[key] = self.time_fn() + ttl_seconds
            return allowed, tokens

    def incr_window(self, key, ttl_seconds):
        with self._lock:
            self._tick()
            if not self._alive(key):
                self._values[key] = 0
                self._expires[key] = self.time_fn() + ttl_seconds
            self._values[key] += 1
            return self._values[key]

    def incr_float(self, key, amount, expire_at):
        with self._lock:
            self._tick()
            current = self._values[key] if self._alive(key) else 0.0
            self._values[key] = float(current) + amount
            self._expires[key] = float(expire_at)
            return self._values[key]

    def incr_float_within(self, key, amount, limit, expire_at):
        with self._lock:
            self._tick()
            current = float(self._values[key]) if self._alive(key) else 0.0
            if current + amount > limit:
                return False, current
            self._values[key] = current + amount
            self._expires[key] = float(expire_at)
            return True, self._values[key]

    def get_float(self, key):
        with self._lock:
            return float(self._values[key]) if self._alive(key) else 0.0

    def get(self, key):
        with self._lock:
            return str(self._values[key]) if self._alive(key) else None

    def set(self, key, value):
        with self._lock:
            self._values[key] = value
            self._expires.pop(key, None)

    def history_add(self, key, score, member, max_entries):
        with self._lock:
            entries = self._values.setdefault(key, [])
            bisect.insort(entries, (score, member))
            if len(entries) > max_entries:
                del entries[: len(entries) - max_entries]

    def history_range(self, key, min_score, max_score):
        with self._lock:
            entries = self._values.get(key, [])
            lo = bisect.bisect_left(entries, (min_score, ""))
            return [member for score, member in entries[lo:] if score <= max_score]


def build_counter_store(settings_obj=None) -> CounterStore:
    """Choose the backend from configuration. Called once at startup."""
    cfg = settings_obj or settings
    url = getattr(cfg, "REDIS_URL", None)
    if url:
        logger.info("[counter_store] using redis backend")
        return RedisCounterStore.from_url(url, socket_timeout=cfg.REDIS_SOCKET_TIMEOUT_SECONDS)
    logger.warning("[counter_store] REDIS_URL not set, using process-local counters")
    return InMemoryCounterStore()


_store: Optional[CounterStore] = None


def get_counter_store() -> CounterStore:
    global _store
    if _store is None:
        _store = build_counter_store()
    return _store


def set_counter_store(store: Optional[CounterStore]) -> None:
    """Install a specific store (tests, app startup)."""
    global _store
    _store = store
