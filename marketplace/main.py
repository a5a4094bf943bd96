import logging
import os
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI, HTTPException
from fastapi.exceptions import RequestValidationError

if "PYTEST_CURRENT_TEST" not in os.environ:
    load_dotenv()

# Import after dotenv is loaded
from marketplace.api import admin, entitlements, health, metering, usage
from marketplace.core.config import settings, validate_config
from marketplace.core.counter_store import get_counter_store
from marketplace.core.errors import (
    AppError,
    app_error_handler,
    http_error_handler,
    request_validation_error_handler,
    unhandled_exception_handler,
)
from marketplace.core.logging import configure_logging
from marketplace.core.middleware.ratelimit import RateLimitMiddleware
from marketplace.core.middleware.request_id import RequestIdMiddleware
from marketplace.core.ratelimit import build_rate_limit_config_from_env
from marketplace.core.validation import validate_env


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger = logging.getLogger("marketplace")
    store = get_counter_store()
    logger.info("Starting marketplace gateway...", extra={"counter_store": store.backend})
    try:
        yield
    finally:
        store.close()
        logger.info("Stopping marketplace gateway...")


def create_app() -> FastAPI:
    configure_logging(settings.ENV)
    validate_env()
    validate_config(strict=getattr(settings, "CONFIG_STRICT", False))

    app = FastAPI(title="Marketplace entitlement gateway", lifespan=lifespan)

    # Outermost last: request ids are assigned before throttling
    app.add_middleware(RateLimitMiddleware, config=build_rate_limit_config_from_env(os.environ))
    app.add_middleware(RequestIdMiddleware)

    app.add_exception_handler(AppError, app_error_handler)
    app.add_exception_handler(HTTPException, http_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_error_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)

    app.include_router(health.root_router)
    app.include_router(entitlements.router)
    app.include_router(usage.router)
    app.include_router(admin.router)
    app.include_router(metering.router)
    return app


app = create_app()
