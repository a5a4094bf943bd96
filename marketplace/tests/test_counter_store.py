from unittest.mock import MagicMock

import pytest
import redis

from marketplace.core.config import Settings
from marketplace.core.counter_store import (
    CounterStoreUnavailableError,
    InMemoryCounterStore,
    RedisCounterStore,
    build_counter_store,
)


class FakeTime:
    def __init__(self, start: float = 0.0):
        self.current = start

    def advance(self, seconds: float):
        self.current += seconds

    def __call__(self):
        return self.current


def test_window_counter_expires():
    fake_time = FakeTime()
    store = InMemoryCounterStore(time_fn=fake_time)

    assert store.incr_window("w", 10) == 1
    assert store.incr_window("w", 10) == 2
    fake_time.advance(10)
    assert store.incr_window("w", 10) == 1


def test_float_counter_expires_at_absolute_time():
    fake_time = FakeTime(100.0)
    store = InMemoryCounterStore(time_fn=fake_time)

    assert store.incr_float("u", 1.5, expire_at=200) == 1.5
    assert store.incr_float("u", 2.0, expire_at=200) == 3.5
    fake_time.advance(100)
    assert store.get_float("u") == 0.0


def test_incr_within_refuses_to_cross_limit():
    store = InMemoryCounterStore()

    assert store.incr_float_within("u", 8, 10, expire_at=10**10) == (True, 8.0)
    assert store.incr_float_within("u", 3, 10, expire_at=10**10) == (False, 8.0)
    assert store.incr_float_within("u", 2, 10, expire_at=10**10) == (True, 10.0)
    assert store.get_float("u") == 10.0


def test_history_is_bounded_and_ordered():
    store = InMemoryCounterStore()
    for i in range(5):
        store.history_add("h", float(10 - i), f"e{i}", max_entries=3)

    # Oldest scores are evicted first
    assert store.history_range("h", 0, 100) == ["e2", "e1", "e0"]
    assert store.history_range("h", 8.5, 9.5) == ["e1"]


def test_tier_values_persist():
    store = InMemoryCounterStore()
    assert store.get("user:u:tier") is None
    store.set("user:u:tier", "pro")
    assert store.get("user:u:tier") == "pro"


def test_redis_errors_become_unavailable():
    client = MagicMock()
    client.get.side_effect = redis.exceptions.TimeoutError("slow")
    store = RedisCounterStore(client)

    with pytest.raises(CounterStoreUnavailableError) as excinfo:
        store.get_float("k")

    assert excinfo.value.code == "infra_unavailable"


def test_build_without_redis_url_is_in_memory():
    store = build_counter_store(Settings(REDIS_URL=None))

    assert isinstance(store, InMemoryCounterStore)
    assert store.backend == "memory"


def test_build_with_redis_url_uses_redis():
    # Redis.from_url connects lazily, so no server is needed here
    store = build_counter_store(Settings(REDIS_URL="redis://localhost:6399/0"))

    assert isinstance(store, RedisCounterStore)
    assert store.backend == "redis"
