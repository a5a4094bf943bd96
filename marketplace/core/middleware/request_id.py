"""
Request correlation for the gateway.

Every request carries an id (client supplied or generated) through the
logging context; the same id is echoed back and embedded in error bodies.
"""

import logging
import re
import time
from uuid import uuid4

from starlette.middleware.base import BaseHTTPMiddleware

from marketplace.core.logging import request_id_ctx_var, latency_bucket_ms

logger = logging.getLogger("marketplace.http")

# Incoming ids end up in logs and response headers
_ACCEPTED_ID = re.compile(r"^[A-Za-z0-9._:-]{1,128}$")


def resolve_request_id(incoming) -> str:
    if incoming and _ACCEPTED_ID.match(incoming):
        return incoming
    return f"req_{uuid4().hex}"


class RequestIdMiddleware(BaseHTTPMiddleware):
    def __init__(self, app, header_name: str = "x-request-id"):
        super().__init__(app)
        self.header_name = header_name

    async def dispatch(self, request, call_next):
        rid = resolve_request_id(request.headers.get(self.header_name))
        request.state.request_id = rid
        token = request_id_ctx_var.set(rid)

        started = time.perf_counter()
        try:
            response = await call_next(request)
            response.headers[self.header_name] = rid
            logger.info(
                "request.complete",
                extra={
                    "path": request.url.path,
                    "method": request.method,
                    "status": response.status_code,
                    "user_id": request.headers.get("x-user-id"),
                    "latency_bucket": latency_bucket_ms((time.perf_counter() - started) * 1000),
                },
            )
            return response
        finally:
            request_id_ctx_var.reset(token)
