"""
Error types for alert propagation, and the relay hub's JSON error envelope.

Propagation policy:
    Transport and parse failures are absorbed where they happen and never
    interrupt the "alert sent" flow. Only a flush reporting zero synced and
    a channel in the disconnected state are visible to the user.

HTTP errors from the relay hub all share one body:

    {"error": {"code": "NOT_FOUND", "message": "...", "status": 404}}

Usage:
    from saferoute.app.core.errors import TransportUnavailable

    raise TransportUnavailable("relay_hub")
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from saferoute.app.core.config import settings

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════
# Exception Hierarchy
# ═══════════════════════════════════════════════════════════════════════════

class SafeRouteError(Exception):
    """Root of every error this package raises on purpose."""

    status_code = 500
    error_code = "INTERNAL_ERROR"

    def __init__(
        self,
        message: str = "An unexpected error occurred",
        *,
        status_code: Optional[int] = None,
        error_code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.details = details or {}


class TransportUnavailable(SafeRouteError):
    """A channel was asked to send while not connected. Non-fatal."""

    status_code = 503
    error_code = "TRANSPORT_UNAVAILABLE"

    def __init__(self, channel: str, message: str = "channel is not connected"):
        super().__init__(f"Transport '{channel}' unavailable: {message}", details={"channel": channel})
        self.channel = channel


class MessageParseError(SafeRouteError):
    """An inbound frame or alert payload could not be decoded."""

    status_code = 422
    error_code = "MESSAGE_PARSE_ERROR"

    def __init__(self, source: str, reason: str, **details: Any):
        super().__init__(f"Malformed message from {source}: {reason}",
                         details={"source": source, **details})
        self.source = source
        self.reason = reason


class LocationUnavailable(SafeRouteError):
    """Geolocation failed or timed out; the alert goes out without location."""

    status_code = 503
    error_code = "LOCATION_UNAVAILABLE"

    def __init__(self, reason: str = "position unavailable"):
        super().__init__(f"Location unavailable: {reason}", details={"reason": reason})
        self.reason = reason


class SyncFailure(SafeRouteError):
    """Backend rejected a bulk-sync batch or could not be reached."""

    status_code = 502
    error_code = "SYNC_FAILURE"

    def __init__(self, reason: str, *, status_code: Optional[int] = None):
        super().__init__(f"Backend sync failed: {reason}", details={"backend_status": status_code})
        self.reason = reason
        self.backend_status = status_code


# ═══════════════════════════════════════════════════════════════════════════
# JSON envelope
# ═══════════════════════════════════════════════════════════════════════════

def error_body(
    status: int,
    code: str,
    message: str,
    details: Optional[Dict[str, Any]] = None,
    request: Optional[Request] = None,
) -> Dict[str, Any]:
    error: Dict[str, Any] = {"code": code, "message": message, "status": status}
    if details:
        error["details"] = details
    # Path and method help when poking the hub from a browser on the LAN
    if request is not None and not settings.is_production:
        error["path"] = request.url.path
        error["method"] = request.method
    return {"error": error}


def _respond(status: int, code: str, message: str, request: Request,
             details: Optional[Dict[str, Any]] = None) -> JSONResponse:
    return JSONResponse(
        status_code=status,
        content=error_body(status, code, message, details, request),
        headers={"Access-Control-Allow-Origin": "*"},
    )


def register_error_handlers(app: FastAPI) -> None:
    """Attach the envelope handlers to ``app``."""

    @app.exception_handler(SafeRouteError)
    async def on_saferoute_error(request: Request, exc: SafeRouteError):
        logger.error("%s on %s: %s", exc.error_code, request.url.path, exc.message)
        return _respond(exc.status_code, exc.error_code, exc.message, request, exc.details)

    @app.exception_handler(StarletteHTTPException)
    async def on_http_error(request: Request, exc: StarletteHTTPException):
        code = "NOT_FOUND" if exc.status_code == 404 else "HTTP_ERROR"
        return _respond(exc.status_code, code, str(exc.detail), request)

    @app.exception_handler(ValueError)
    async def on_value_error(request: Request, exc: ValueError):
        logger.warning("Rejected request to %s: %s", request.url.path, exc)
        return _respond(422, "VALIDATION_ERROR", str(exc), request)

    @app.exception_handler(Exception)
    async def on_unhandled(request: Request, exc: Exception):
        logger.critical("Unhandled error on %s", request.url.path, exc_info=exc)
        message = str(exc) if settings.DEBUG else "Internal server error"
        return _respond(500, "INTERNAL_ERROR", message, request)
