"""
Request context middleware.

Picks up the caller's correlation id from ``X-Request-ID`` (or
``X-Correlation-ID``), generating one when absent, and keeps it in a
ContextVar. Pipeline runs, A/B executions and error responses started by the
request all carry this id, and it is echoed back on the response.
"""

import time
import logging
from contextvars import ContextVar
from uuid import uuid4

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

logger = logging.getLogger(__name__)

_request_id_var: ContextVar[str] = ContextVar("request_id", default="")


def get_request_id() -> str:
    """Correlation id of the request being served, or "" outside a request."""
    return _request_id_var.get()


class RequestContextMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        request_id = (
            request.headers.get("X-Request-ID")
            or request.headers.get("X-Correlation-ID")
            or uuid4().hex
        )
        token = _request_id_var.set(request_id)

        start_time = time.perf_counter()
        try:
            response = await call_next(request)
        finally:
            duration_ms = round((time.perf_counter() - start_time) * 1000, 2)
            _request_id_var.reset(token)

        response.headers["X-Request-ID"] = request_id

        level = logging.DEBUG if request.url.path in ("/metrics", "/api/health") else logging.INFO
        logger.log(
            level,
            "%s %s %s %.0fms",
            request.method,
            request.url.path,
            response.status_code,
            duration_ms,
            extra={"duration_ms": duration_ms},
        )

        return response
