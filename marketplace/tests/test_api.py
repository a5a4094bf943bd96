"""HTTP surface: status codes, error contract and auth wiring."""

from datetime import datetime, timedelta, timezone

import jwt
import pytest

from marketplace.core.config import settings
from marketplace.core.counter_store import CounterStoreUnavailableError, InMemoryCounterStore, set_counter_store
from marketplace.features.entitlements.service import get_entitlement

USER = {"X-User-Id": "user-1"}


def _create(client, admin_key, **overrides):
    body = {
        "user_id": "user-1",
        "service_id": 1,
        "payment_id": "pay-1",
        "pricing_tier": "basic",
        "quota_limit": 10,
        "validity_days": 30,
        "tx_digest": "0xabc",
    }
    body.update(overrides)
    resp = client.post("/v1/entitlements", json=body, headers={"X-Admin-Key": admin_key})
    assert resp.status_code == 201, resp.text
    return resp.json()


class TestHealth:
    def test_healthz(self, client):
        assert client.get("/healthz").json() == {"status": "ok"}

    def test_readyz_reports_tables_and_store(self, client):
        resp = client.get("/readyz")

        assert resp.status_code == 200
        assert resp.json()["counter_store"] == {"backend": "memory", "reachable": True}


class TestEntitlementRoutes:
    def test_create_requires_admin_key(self, client):
        resp = client.post("/v1/entitlements", json={}, headers={"X-Admin-Key": "wrong"})

        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "unauthorized"

    def test_verify_allows(self, client, admin_key):
        created = _create(client, admin_key)

        resp = client.post("/v1/entitlements/verify", json={"service_id": 1}, headers=USER)

        assert resp.status_code == 200
        body = resp.json()
        assert body["allowed"] is True
        assert body["entitlement_id"] == created["id"]
        assert body["quota_remaining"] == 10

    def test_verify_without_entitlement_is_403(self, client):
        resp = client.post("/v1/entitlements/verify", json={"service_id": 1}, headers=USER)

        assert resp.status_code == 403
        assert resp.json()["reason_code"] == "NO_ENTITLEMENT"

    def test_verify_requires_identity(self, client):
        resp = client.post("/v1/entitlements/verify", json={"service_id": 1})

        assert resp.status_code == 401

    def test_bearer_token_identity(self, client, admin_key, monkeypatch):
        monkeypatch.setattr(settings, "JWT_SECRET", "s3cret")
        _create(client, admin_key, user_id="wallet-user")
        token = jwt.encode(
            {"userId": "wallet-user", "exp": datetime.now(timezone.utc) + timedelta(minutes=5)},
            "s3cret",
            algorithm="HS256",
        )

        resp = client.post(
            "/v1/entitlements/verify",
            json={"service_id": 1},
            headers={"Authorization": f"Bearer {token}"},
        )

        assert resp.status_code == 200

    def test_invalid_bearer_token_rejected(self, client, monkeypatch):
        monkeypatch.setattr(settings, "JWT_SECRET", "s3cret")
        token = jwt.encode({"sub": "user-1"}, "other-secret", algorithm="HS256")

        resp = client.post(
            "/v1/entitlements/verify",
            json={"service_id": 1},
            headers={"Authorization": f"Bearer {token}", "X-User-Id": "user-1"},
        )

        assert resp.status_code == 401

    def test_get_is_owner_only(self, client, admin_key):
        created = _create(client, admin_key)

        assert client.get(f"/v1/entitlements/{created['id']}", headers=USER).status_code == 200
        other = client.get(f"/v1/entitlements/{created['id']}", headers={"X-User-Id": "user-2"})
        assert other.status_code == 404
        assert other.json()["error"]["code"] == "not_found"

    def test_list_and_cancel(self, client, admin_key):
        created = _create(client, admin_key)

        listed = client.get("/v1/entitlements", headers=USER).json()
        assert listed["count"] == 1

        cancelled = client.post(f"/v1/entitlements/{created['id']}/cancel", headers=USER)
        assert cancelled.status_code == 200
        assert cancelled.json()["entitlement"]["is_active"] is False

        again = client.post(f"/v1/entitlements/{created['id']}/cancel", headers=USER)
        assert again.status_code == 409
        assert again.json()["error"]["code"] == "already_cancelled"

        verdict = client.post("/v1/entitlements/verify", json={"service_id": 1}, headers=USER)
        assert verdict.json()["reason_code"] == "ENTITLEMENT_INACTIVE"


class TestUsageRoutes:
    def test_track_then_exhaust(self, client, admin_key):
        _create(client, admin_key, quota_limit=3)

        first = client.post(
            "/v1/usage/track",
            json={"service_id": 1, "endpoint": "/rpc", "requests_count": 3},
            headers={**USER, "User-Agent": "sdk/1.0"},
        )
        assert first.status_code == 201
        body = first.json()
        assert body["quota_used"] == 3
        assert body["quota_remaining"] == 0
        assert body["usage_log"]["user_agent"] == "sdk/1.0"
        assert "warning" in body

        second = client.post(
            "/v1/usage/track",
            json={"service_id": 1, "endpoint": "/rpc"},
            headers=USER,
        )
        assert second.status_code == 429
        assert second.json()["reason_code"] == "QUOTA_EXCEEDED"

    def test_track_rejects_user_id_in_body(self, client, admin_key):
        _create(client, admin_key)

        resp = client.post(
            "/v1/usage/track",
            json={"service_id": 1, "endpoint": "/rpc", "user_id": "someone-else"},
            headers=USER,
        )

        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "validation_error"

    def test_track_rejects_zero_count(self, client, admin_key):
        _create(client, admin_key)

        resp = client.post(
            "/v1/usage/track",
            json={"service_id": 1, "endpoint": "/rpc", "requests_count": 0},
            headers=USER,
        )

        assert resp.status_code == 400

    def test_track_without_entitlement(self, client):
        resp = client.post("/v1/usage/track", json={"service_id": 1, "endpoint": "/rpc"}, headers=USER)

        assert resp.status_code == 403

    def test_stats_and_logs(self, client, admin_key):
        _create(client, admin_key, quota_limit=100)
        for endpoint in ("/a", "/a", "/b"):
            client.post("/v1/usage/track", json={"service_id": 1, "endpoint": endpoint}, headers=USER)

        stats = client.get("/v1/usage/stats", headers=USER).json()
        logs = client.get("/v1/usage/logs", params={"limit": 2}, headers=USER).json()

        assert stats["total_requests"] == 3
        assert stats["requests_by_endpoint"][0] == {"endpoint": "/a", "request_count": 2}
        assert logs["count"] == 2


    def test_stats_accepts_mixed_offset_bounds(self, client):
        ok = client.get(
            "/v1/usage/stats",
            params={"start": "2026-01-01T00:00:00", "end": "2026-01-02T00:00:00Z"},
            headers=USER,
        )
        reversed_bounds = client.get(
            "/v1/usage/stats",
            params={"start": "2026-01-03T00:00:00", "end": "2026-01-02T00:00:00+00:00"},
            headers=USER,
        )

        assert ok.status_code == 200
        assert ok.json()["total_requests"] == 0
        assert reversed_bounds.status_code == 400
        assert reversed_bounds.json()["error"]["code"] == "validation_error"

    def test_track_batch_routed_to_entitlement_with_room(self, client, admin_key):
        _create(client, admin_key, payment_id="pay-short", quota_limit=1, validity_days=2)
        roomy = _create(client, admin_key, payment_id="pay-long", quota_limit=100, validity_days=30)

        resp = client.post(
            "/v1/usage/track",
            json={"service_id": 1, "endpoint": "/rpc", "requests_count": 5},
            headers=USER,
        )

        assert resp.status_code == 201
        assert resp.json()["usage_log"]["entitlement_id"] == roomy["id"]
        assert resp.json()["quota_remaining"] == 95


class TestAdminRoutes:
    def test_adjust_quota(self, client, admin_key):
        created = _create(client, admin_key)

        resp = client.post(
            f"/v1/admin/entitlements/{created['id']}/quota",
            json={"adjustment": 15, "reason": "support ticket"},
            headers={"X-Admin-Key": admin_key},
        )

        assert resp.status_code == 200
        assert resp.json()["audit"]["new_limit"] == 25
        assert get_entitlement(created["id"]).quota_limit == 25

        history = client.get(
            f"/v1/admin/entitlements/{created['id']}/quota-adjustments",
            headers={"X-Admin-Key": admin_key},
        ).json()
        assert len(history["adjustments"]) == 1

    @pytest.mark.parametrize(
        "body, code",
        [
            ({"adjustment": 0, "reason": "x"}, "validation_error"),
            ({"adjustment": -50, "reason": "x"}, "negative_quota_limit"),
        ],
    )
    def test_adjust_quota_rejections(self, client, admin_key, body, code):
        created = _create(client, admin_key)

        resp = client.post(
            f"/v1/admin/entitlements/{created['id']}/quota",
            json=body,
            headers={"X-Admin-Key": admin_key},
        )

        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == code


class TestMeteringRoutes:
    def test_enforce_and_tier(self, client, admin_key):
        client.put("/v1/admin/users/user-1/tier", json={"tier": "free"}, headers={"X-Admin-Key": admin_key})
        allowed = client.post("/v1/metering/rpc/enforce", json={"units": 1000}, headers=USER)
        denied = client.post("/v1/metering/rpc/enforce", json={"units": 1}, headers=USER)

        assert allowed.status_code == 200
        assert denied.status_code == 429
        assert denied.json()["metrics"]["status"] == "exceeded"

        check = client.get("/v1/metering/rpc", headers=USER).json()
        history = client.get("/v1/metering/rpc/history", headers=USER).json()
        assert check["usage"] == 1000
        assert history["count"] == 1

    def test_meter_store_outage_is_500(self, client):
        class DownStore(InMemoryCounterStore):
            def get(self, key):
                raise CounterStoreUnavailableError("down")

        set_counter_store(DownStore())

        resp = client.get("/v1/metering/rpc", headers=USER)

        assert resp.status_code == 500
        assert resp.json()["error"]["code"] == "infra_unavailable"


def test_readyz_reports_missing_tables(client, db):
    from marketplace.core.database import drop_all_tables

    drop_all_tables()

    resp = client.get("/readyz")

    assert resp.status_code == 503
    assert "entitlements" in resp.json()["detail"]
