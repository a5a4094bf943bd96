"""Error normalization and handlers.

Entitlement denials (no entitlement, expired, quota exceeded, ...) are
business outcomes returned as result objects and never raised. The classes
below cover input errors, ownership errors and infrastructure failures.
Every handler answers with the same body:

    {"error": {"code", "message", "request_id"}, "detail": message}
"""

import logging
from typing import Optional
from uuid import uuid4

from fastapi import HTTPException
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.requests import Request

from marketplace.core.logging import get_request_id

logger = logging.getLogger("marketplace.errors")

HTTP_ERROR_CODES = {
    401: "unauthorized",
    403: "forbidden",
    404: "not_found",
    405: "method_not_allowed",
    503: "unavailable",
}


class AppError(Exception):
    code = "app_error"
    status_code = 500

    def __init__(self, message: str, *, code: Optional[str] = None, status_code: Optional[int] = None, request_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        if status_code:
            self.status_code = status_code
        self.request_id = request_id


class ValidationError(AppError, ValueError):
    code = "validation_error"
    status_code = 400


class NotFoundError(AppError, LookupError):
    """Also raised for rows owned by someone else, so ids cannot be probed."""
    code = "not_found"
    status_code = 404


class ConflictError(AppError):
    code = "conflict"
    status_code = 409


class RateLimitError(AppError):
    code = "rate_limited"
    status_code = 429


class InfraUnavailableError(AppError):
    """Persistence or counter store unreachable.

    Fail-closed everywhere except the rate limiter, which fails open.
    """
    code = "infra_unavailable"
    status_code = 500


def _extract_request_id(request: Request) -> str:
    return getattr(request.state, "request_id", None) or get_request_id() or f"req_{uuid4().hex}"


def error_response(rid: str, status_code: int, code: str, message: str) -> JSONResponse:
    response = JSONResponse(
        status_code=status_code,
        content={
            "error": {"code": code, "message": message, "request_id": rid},
            "detail": message,
        },
    )
    response.headers["x-request-id"] = rid
    return response


async def app_error_handler(request: Request, exc: AppError):
    rid = exc.request_id or _extract_request_id(request)
    logger.log(
        logging.ERROR if exc.status_code >= 500 else logging.WARNING,
        "app.error",
        extra={"request_id": rid, "error_code": exc.code, "error_message": exc.message, "status": exc.status_code},
    )
    return error_response(rid, exc.status_code, exc.code, exc.message)


async def http_error_handler(request: Request, exc: HTTPException):
    rid = _extract_request_id(request)
    code = HTTP_ERROR_CODES.get(exc.status_code, "http_error")
    logger.warning("http.error", extra={"request_id": rid, "error_code": code, "status": exc.status_code})
    return error_response(rid, exc.status_code, code, str(exc.detail or "HTTP error"))


async def request_validation_error_handler(request: Request, exc: RequestValidationError):
    """Body and query validation failures are 400s, reported one field at a time."""
    rid = _extract_request_id(request)
    errors = exc.errors()
    first = errors[0] if errors else {}
    location = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
    reason = first.get("msg", "invalid input")
    message = f"{location}: {reason}" if location else reason
    logger.warning("request.invalid", extra={"request_id": rid, "error_code": "validation_error", "status": 400})
    return error_response(rid, 400, "validation_error", message)


async def unhandled_exception_handler(request: Request, exc: Exception):
    rid = _extract_request_id(request)
    logger.error("unhandled.exception", exc_info=True, extra={"request_id": rid, "error_code": "internal_error"})
    return error_response(rid, 500, "internal_error", "Unexpected error")
