# marketplace/conftest.py
import itertools
from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import update

from marketplace.core.config import settings
from marketplace.core.counter_store import InMemoryCounterStore, set_counter_store
from marketplace.core.database import (
    create_all_tables,
    dispose_engine,
    entitlements,
    get_db_session,
    init_engine,
)
from marketplace.features.entitlements.contracts import EntitlementCreate
from marketplace.features.entitlements.service import create_entitlement, get_entitlement
from marketplace.features.metering.service import set_usage_meter
from marketplace.models.entitlement import PricingTier

ADMIN_KEY = "test-admin-key"
START = datetime(2026, 3, 15, 12, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    """Deterministic UTC clock. Call it for a datetime, .time() for epoch seconds."""

    def __init__(self, start: datetime = START):
        self.now = start

    def advance(self, seconds: float):
        self.now = self.now + timedelta(seconds=seconds)

    def set(self, value: datetime):
        self.now = value

    def time(self) -> float:
        return self.now.timestamp()

    def __call__(self) -> datetime:
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def db(tmp_path):
    """
    File-backed SQLite database per test.

    A file (not :memory:) so concurrent tests get real per-thread connections
    and SQLite's writer lock.
    """
    engine = init_engine(f"sqlite:///{tmp_path / 'marketplace.db'}")
    create_all_tables()
    yield engine
    dispose_engine()


@pytest.fixture(autouse=True)
def counter_store():
    """Fresh process-local counter store; no Redis in tests."""
    store = InMemoryCounterStore()
    set_counter_store(store)
    set_usage_meter(None)
    yield store
    set_counter_store(None)
    set_usage_meter(None)


@pytest.fixture
def admin_key(monkeypatch):
    monkeypatch.setattr(settings, "ADMIN_KEY", ADMIN_KEY)
    return ADMIN_KEY


@pytest.fixture
def make_entitlement(db, clock):
    """
    Factory for entitlements relative to the fake clock.

    quota_used is written directly (test setup only); production code only
    moves it through the tracker.
    """
    counter = itertools.count(1)

    def _make(
        user_id: str = "user-1",
        service_id: int = 1,
        quota_limit: int = 10,
        quota_used: int = 0,
        valid_from=None,
        valid_until=None,
        pricing_tier: PricingTier = PricingTier.BASIC,
        now=None,
    ):
        created_at = now or clock()
        payload = EntitlementCreate(
            user_id=user_id,
            service_id=service_id,
            payment_id=f"pay-{next(counter)}",
            pricing_tier=pricing_tier,
            quota_limit=quota_limit,
            valid_from=valid_from or clock() - timedelta(days=1),
            valid_until=valid_until or clock() + timedelta(days=30),
            tx_digest="0xdigest",
        )
        ent = create_entitlement(payload, now=created_at)
        if quota_used:
            with get_db_session() as session:
                session.execute(
                    update(entitlements)
                    .where(entitlements.c.id == ent.id)
                    .values(quota_used=quota_used)
                )
            ent = get_entitlement(ent.id)
        return ent

    return _make


@pytest.fixture
def client(db, admin_key):
    from marketplace.main import create_app

    return TestClient(create_app())
