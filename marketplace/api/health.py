"""
Health endpoints for operational monitoring.

Liveness has no dependencies; readiness probes the database and required
tables. The counter store is reported but never fails readiness: the rate
limiter fails open without it.
"""

import logging

from fastapi import APIRouter
from fastapi.responses import JSONResponse
from sqlalchemy import inspect
from sqlalchemy.exc import SQLAlchemyError

from marketplace.core.counter_store import get_counter_store
from marketplace.core.database import check_connection, get_engine

logger = logging.getLogger("marketplace")

root_router = APIRouter(tags=["health"])

REQUIRED_TABLES = ["entitlements", "usage_logs", "quota_adjustments"]


@root_router.get("/healthz")
def healthz():
    """Lightweight liveness check (no deps)."""
    return {"status": "ok"}


@root_router.get("/readyz")
def readyz():
    """Readiness check: DB connectivity + required tables."""
    store = get_counter_store()
    counter_store = {"backend": store.backend, "reachable": store.ping()}

    if not check_connection():
        return JSONResponse(
            status_code=503,
            content={"status": "error", "detail": "database unreachable", "counter_store": counter_store},
        )

    try:
        inspector = inspect(get_engine())
        missing = [t for t in REQUIRED_TABLES if not inspector.has_table(t)]
    except SQLAlchemyError as e:
        logger.error(f"[readyz] table probe failed: {e}")
        missing = REQUIRED_TABLES

    if missing:
        detail = f"missing tables: {', '.join(missing)}"
        logger.warning(f"[readyz] {detail}")
        return JSONResponse(
            status_code=503,
            content={"status": "error", "detail": detail, "counter_store": counter_store},
        )

    if not counter_store["reachable"]:
        logger.warning("[readyz] counter store unreachable, rate limits failing open")
    return {"status": "ok", "counter_store": counter_store}
