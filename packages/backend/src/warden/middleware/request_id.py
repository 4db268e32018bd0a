"""Correlation middleware: one ID per request, bound into every auth log line.

Learn: A caller may supply X-Request-ID so its own trace continues through
warden, but the header is untrusted input that ends up in every log line
for the request. Only short IDs from a safe alphabet are accepted; anything
else is replaced by a fresh UUID. The ID, method and path are bound to
structlog's contextvars so identity, permission and rate-limit decisions
logged downstream all carry them. One "request.completed" line closes the
request with its status and latency.
"""

import re
import time
import uuid
from typing import Optional

import structlog
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

REQUEST_ID_HEADER = "X-Request-ID"
MAX_REQUEST_ID_LENGTH = 128
_SAFE_REQUEST_ID = re.compile(r"^[A-Za-z0-9._:\-]+$")

logger = structlog.get_logger()


def resolve_request_id(incoming: Optional[str]) -> str:
    """Keep a well-formed caller ID, otherwise mint a new one."""
    if (
        incoming
        and len(incoming) <= MAX_REQUEST_ID_LENGTH
        and _SAFE_REQUEST_ID.match(incoming)
    ):
        return incoming
    return str(uuid.uuid4())


class RequestIdMiddleware(BaseHTTPMiddleware):
    """Bind a correlation ID for the request and echo it on the response."""

    async def dispatch(self, request: Request, call_next) -> Response:
        request_id = resolve_request_id(request.headers.get(REQUEST_ID_HEADER))

        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(
            request_id=request_id,
            method=request.method,
            path=request.url.path,
        )

        started = time.perf_counter()
        response: Response = await call_next(request)
        response.headers[REQUEST_ID_HEADER] = request_id
        logger.info(
            "request.completed",
            status_code=response.status_code,
            duration_ms=round((time.perf_counter() - started) * 1000, 2),
        )
        return response
