"""
test_core.py — Tests for the ambient core: errors, logging, middleware.

Run with:
    pytest tests/test_core.py -v
"""

from __future__ import annotations

import json
import logging

from fastapi import FastAPI
from fastapi.testclient import TestClient

from saferoute.app.core.errors import (
    LocationUnavailable,
    MessageParseError,
    SafeRouteError,
    SyncFailure,
    TransportUnavailable,
    error_body,
    register_error_handlers,
)
from saferoute.app.core.logging_config import JSONFormatter, PrettyFormatter
from saferoute.app.core.middleware import RequestLoggingMiddleware


def _record(**extra) -> logging.LogRecord:
    record = logging.LogRecord("saferoute.test", logging.WARNING, __file__, 10,
                               "SOS %s received", ("sos-1",), None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


# ═══════════════════════════════════════════════════════════════════════════
# Section 1: Exceptions
# ═══════════════════════════════════════════════════════════════════════════

class TestExceptions:

    def test_codes(self):
        assert TransportUnavailable("relay_hub").error_code == "TRANSPORT_UNAVAILABLE"
        assert MessageParseError("hub", "bad").status_code == 422
        assert LocationUnavailable().error_code == "LOCATION_UNAVAILABLE"
        assert SyncFailure("down", status_code=503).status_code == 502

    def test_details(self):
        exc = TransportUnavailable("local_bus")
        assert exc.channel == "local_bus"
        assert exc.details == {"channel": "local_bus"}
        assert SyncFailure("down", status_code=401).details == {"backend_status": 401}

    def test_overrides(self):
        exc = SafeRouteError("teapot", status_code=418, error_code="TEAPOT")
        assert (exc.status_code, exc.error_code) == (418, "TEAPOT")
        assert SafeRouteError().status_code == 500

    def test_error_body(self):
        assert error_body(404, "NOT_FOUND", "nope") == {
            "error": {"code": "NOT_FOUND", "message": "nope", "status": 404},
        }


# ═══════════════════════════════════════════════════════════════════════════
# Section 2: Handlers + middleware on a bare app
# ═══════════════════════════════════════════════════════════════════════════

def _app() -> FastAPI:
    app = FastAPI()
    app.add_middleware(RequestLoggingMiddleware)
    register_error_handlers(app)

    @app.get("/sync")
    async def sync():
        raise SyncFailure("backend answered 503", status_code=503)

    @app.get("/bad")
    async def bad():
        raise ValueError("lat out of range")

    return app


class TestHandlers:

    def test_domain_error_envelope(self):
        with TestClient(_app()) as client:
            response = client.get("/sync")
        assert response.status_code == 502
        assert response.json()["error"]["code"] == "SYNC_FAILURE"
        assert response.headers["access-control-allow-origin"] == "*"

    def test_value_error_is_422(self):
        with TestClient(_app()) as client:
            response = client.get("/bad")
        assert response.status_code == 422
        assert response.json()["error"]["message"] == "lat out of range"

    def test_request_id_echoed(self):
        with TestClient(_app()) as client:
            response = client.get("/missing", headers={"X-Request-ID": "abc123"})
        assert response.status_code == 404
        assert response.headers["X-Request-ID"] == "abc123"
        assert response.headers["X-Process-Time"].endswith("ms")


# ═══════════════════════════════════════════════════════════════════════════
# Section 3: Formatters
# ═══════════════════════════════════════════════════════════════════════════

class TestFormatters:

    def test_json_carries_alert_fields(self):
        line = JSONFormatter().format(_record(alert_id="sos-1", hop_count=2, channel="relay_hub"))
        entry = json.loads(line)
        assert entry["msg"] == "SOS sos-1 received"
        assert entry["level"] == "WARNING"
        assert (entry["alert_id"], entry["hop_count"], entry["channel"]) == ("sos-1", 2, "relay_hub")

    def test_json_without_extras(self):
        entry = json.loads(JSONFormatter().format(_record()))
        assert "alert_id" not in entry

    def test_pretty_alert_tag(self):
        line = PrettyFormatter().format(_record(alert_id="sos-1", hop_count=1))
        assert "SOS sos-1 received" in line
        assert "⟨sos-1|hop 1⟩" in line
