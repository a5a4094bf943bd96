import json
import logging

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from marketplace.core.config import Settings, validate_config
from marketplace.core.errors import (
    AppError,
    ConflictError,
    InfraUnavailableError,
    app_error_handler,
    unhandled_exception_handler,
)
from marketplace.core.logging import JsonFormatter, latency_bucket_ms, log_event
from marketplace.core.middleware.request_id import RequestIdMiddleware
from marketplace.core.validation import EnvValidationError, validate_env


class TestValidateEnv:
    def test_skip_flag(self, monkeypatch):
        monkeypatch.setenv("SKIP_ENV_VALIDATION", "1")
        assert validate_env("production", Settings()) is True

    def test_production_requires_shared_store(self, monkeypatch):
        monkeypatch.delenv("SKIP_ENV_VALIDATION", raising=False)
        cfg = Settings(
            DATABASE_URL="postgresql://u:p@db:5432/market",
            ADMIN_KEY="k",
            JWT_SECRET="s",
            REDIS_URL=None,
        )

        with pytest.raises(EnvValidationError, match="REDIS_URL"):
            validate_env("production", cfg)

    def test_rejects_malformed_database_url(self, monkeypatch):
        monkeypatch.delenv("SKIP_ENV_VALIDATION", raising=False)

        with pytest.raises(EnvValidationError):
            validate_env("development", Settings(DATABASE_URL="not a url"))

    def test_sqlite_url_accepted(self, monkeypatch):
        monkeypatch.delenv("SKIP_ENV_VALIDATION", raising=False)
        assert validate_env("development", Settings(DATABASE_URL="sqlite:///./market.db")) is True

    def test_tier_limits_need_free_tier(self, monkeypatch):
        monkeypatch.delenv("SKIP_ENV_VALIDATION", raising=False)

        with pytest.raises(EnvValidationError, match="free tier"):
            validate_env("development", Settings(METER_TIER_LIMITS={"pro": 10}))
        with pytest.raises(EnvValidationError, match="positive"):
            validate_env("development", Settings(METER_TIER_LIMITS={"free": 0}))

    def test_test_database_only_in_test_mode(self, monkeypatch):
        monkeypatch.delenv("SKIP_ENV_VALIDATION", raising=False)
        cfg = Settings(TEST_DATABASE_URL="sqlite:///./test.db")

        assert validate_env("test", cfg) is True
        with pytest.raises(EnvValidationError):
            validate_env("development", cfg)


class TestValidateConfig:
    def test_strict_raises_on_missing(self):
        with pytest.raises(RuntimeError, match="DATABASE_URL"):
            validate_config(strict=True, settings_obj=Settings(DATABASE_URL=None, JWT_SECRET="s", ADMIN_KEY="k"))

    def test_lenient_warns_about_process_local_counters(self, caplog):
        cfg = Settings(DATABASE_URL="sqlite://", JWT_SECRET="s", ADMIN_KEY="k", REDIS_URL=None)

        with caplog.at_level(logging.WARNING, logger="marketplace"):
            assert validate_config(strict=False, settings_obj=cfg) is True

        assert "under-enforce" in caplog.text

    def test_threshold_range(self):
        cfg = Settings(DATABASE_URL="sqlite://", JWT_SECRET="s", ADMIN_KEY="k", QUOTA_WARNING_THRESHOLD=1.5)

        with pytest.raises(RuntimeError, match="QUOTA_WARNING_THRESHOLD"):
            validate_config(strict=True, settings_obj=cfg)


class TestErrorContract:
    def _app(self):
        app = FastAPI()
        app.add_middleware(RequestIdMiddleware)
        app.add_exception_handler(AppError, app_error_handler)
        app.add_exception_handler(Exception, unhandled_exception_handler)

        @app.get("/conflict")
        async def conflict():
            raise ConflictError("Entitlement is already cancelled", code="already_cancelled")

        @app.get("/infra")
        async def infra():
            raise InfraUnavailableError("Persistence unavailable")

        return app

    def test_app_error_payload(self):
        client = TestClient(self._app())

        resp = client.get("/conflict", headers={"x-request-id": "rid-123"})

        assert resp.status_code == 409
        assert resp.headers["x-request-id"] == "rid-123"
        assert resp.json() == {
            "error": {
                "code": "already_cancelled",
                "message": "Entitlement is already cancelled",
                "request_id": "rid-123",
            },
            "detail": "Entitlement is already cancelled",
        }

    def test_infra_error_is_500(self):
        client = TestClient(self._app())

        resp = client.get("/infra")

        assert resp.status_code == 500
        assert resp.json()["error"]["code"] == "infra_unavailable"


class TestLogging:
    def test_json_formatter_promotes_structured_fields(self):
        record = logging.LogRecord("marketplace.verify", logging.INFO, __file__, 1, "[verify] DENY", None, None)
        record.request_id = "rid-1"
        record.user_id = "user-1"
        record.reason_code = "QUOTA_EXCEEDED"

        payload = json.loads(JsonFormatter().format(record))

        assert payload["message"] == "[verify] DENY"
        assert payload["request_id"] == "rid-1"
        assert payload["user_id"] == "user-1"
        assert payload["reason_code"] == "QUOTA_EXCEEDED"
        assert "service_id" not in payload

    def test_latency_buckets(self):
        assert latency_bucket_ms(None) == "unknown"
        assert latency_bucket_ms(5) == "<10ms"
        assert latency_bucket_ms(250) == "100-500ms"
        assert latency_bucket_ms(5000) == ">=1000ms"

    def test_log_event_truncates_extra(self, caplog):
        with caplog.at_level(logging.INFO, logger="marketplace"):
            log_event("info", "[track] RECORDED", user_id="u", extra={"endpoint": "x" * 600})

        record = caplog.records[-1]
        assert record.user_id == "u"
        assert record.endpoint.endswith("...<truncated>")


class TestServe:
    def test_init_db_only_creates_tables(self, tmp_path, monkeypatch):
        from sqlalchemy import inspect

        from marketplace import serve
        from marketplace.core.database import dispose_engine, get_engine, init_engine

        init_engine(f"sqlite:///{tmp_path / 'serve.db'}")
        monkeypatch.setattr(serve.uvicorn, "run", lambda *a, **kw: pytest.fail("should not serve"))
        try:
            assert serve.main(["--init-db-only"]) == 0
            assert inspect(get_engine()).has_table("entitlements")
        finally:
            dispose_engine()

    def test_serves_app(self, monkeypatch):
        from marketplace import serve

        calls = []
        monkeypatch.setattr(serve.uvicorn, "run", lambda app, **kw: calls.append((app, kw["port"])))

        assert serve.main(["--port", "9001"]) == 0
        assert calls == [("marketplace.main:app", 9001)]
