"""
Per-request logging for the relay hub's HTTP surface.

Every HTTP request gets a correlation id (X-Request-ID, taken from the
request or generated) and a timing header (X-Process-Time), and produces
one log line. Devices poll /health constantly, so those lines go out at
DEBUG; client errors at WARNING.

WebSocket connections are not HTTP requests and pass straight through;
the hub logs connects and disconnects itself.
"""

from __future__ import annotations

import logging
import time
import uuid

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from saferoute.app.core.logging_config import set_request_context

logger = logging.getLogger(__name__)

QUIET_PATHS = frozenset({"/health"})


def _level_for(path: str, status_code: int) -> int:
    if path in QUIET_PATHS and status_code < 400:
        return logging.DEBUG
    if status_code >= 500:
        return logging.ERROR
    if status_code >= 400:
        return logging.WARNING
    return logging.INFO


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Correlation id + timing + one log line per HTTP request."""

    async def dispatch(self, request: Request, call_next) -> Response:
        request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex[:16]
        peer = request.client.host if request.client else "-"
        path = request.url.path
        set_request_context(request_id=request_id, client_ip=peer, endpoint=path)

        started = time.perf_counter()
        status_code = 500
        try:
            response = await call_next(request)
            status_code = response.status_code
            response.headers["X-Request-ID"] = request_id
            response.headers["X-Process-Time"] = f"{(time.perf_counter() - started) * 1000:.1f}ms"
            return response
        finally:
            elapsed_ms = (time.perf_counter() - started) * 1000
            logger.log(
                _level_for(path, status_code),
                "%s %s → %d in %.1fms from %s",
                request.method, path, status_code, elapsed_ms, peer,
                extra={"duration_ms": elapsed_ms, "status_code": status_code, "endpoint": path},
            )
            set_request_context()
