"""
test_sync.py — Tests for backend reconciliation.

httpx.MockTransport plays the backend, so the real BackendSyncClient code
path (URL building, bearer header, status mapping) is exercised.

Covers:
    • Empty queues flush without a request
    • Successful flush clears both queues and is idempotent
    • Non-2xx, network errors, timeouts and bad URLs keep the queues
    • A synced alert replayed afterwards is not submitted again
    • Alerts arriving during an in-flight flush survive it
    • Auto-flush scheduling

Run with:
    pytest tests/test_sync.py -v
"""

from __future__ import annotations

import asyncio
import json
from typing import List

import httpx
import pytest

from saferoute.app.core.errors import SyncFailure
from saferoute.app.mesh.channels.backend_sync import BackendSyncClient
from saferoute.app.mesh.engine import PropagationEngine
from saferoute.app.mesh.models import Alert, Location
from saferoute.app.mesh.storage import StateStore
from saferoute.app.mesh.sync import SyncReconciler, SyncResult


# ═══════════════════════════════════════════════════════════════════════════
# Test Fixtures
# ═══════════════════════════════════════════════════════════════════════════

API_URL = "http://backend.test/api"


class Backend:
    """Records bulk-sync requests and answers with a fixed status."""

    def __init__(self, status: int = 200):
        self.status = status
        self.requests: List[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return httpx.Response(self.status, json={"ok": self.status < 400})

    @property
    def batches(self) -> List[list]:
        return [json.loads(r.content)["messages"] for r in self.requests]


def _reconciler(handler, engine: PropagationEngine = None, **kwargs) -> SyncReconciler:
    engine = engine or PropagationEngine("SR-AAAAAA", StateStore.in_memory())
    client = BackendSyncClient(API_URL, "secret-token", transport=httpx.MockTransport(handler))
    return SyncReconciler(engine, client, **kwargs)


def _foreign(alert_id: str) -> Alert:
    return Alert(id=alert_id, sender_id="SR-CCCCCC", origin_device="SR-CCCCCC",
                 timestamp=1718000000000)


# ═══════════════════════════════════════════════════════════════════════════
# Section 1: Flush
# ═══════════════════════════════════════════════════════════════════════════

class TestFlush:

    def test_empty_queue_makes_no_request(self):
        backend = Backend()
        reconciler = _reconciler(backend)

        result = asyncio.run(reconciler.flush())

        assert result == SyncResult(synced=0)
        assert backend.requests == []

    def test_success_clears_both_queues(self):
        backend = Backend()
        reconciler = _reconciler(backend)
        engine = reconciler.engine
        own = engine.send_alert(Location(13.06, 80.25))
        engine.on_receive(_foreign("sos-peer"))

        result = asyncio.run(reconciler.flush())

        assert result.synced == 2
        assert result.ok
        assert engine.get_queue_stats().total == 0
        request = backend.requests[0]
        assert request.method == "POST"
        assert str(request.url) == "http://backend.test/api/sos/bulk-sync"
        assert request.headers["Authorization"] == "Bearer secret-token"
        assert [m["id"] for m in backend.batches[0]] == [own.id, "sos-peer"]
        assert backend.batches[0][1]["hopCount"] == 1

    def test_idempotent(self):
        backend = Backend()
        reconciler = _reconciler(backend)
        reconciler.engine.send_alert()

        async def scenario():
            first = await reconciler.flush()
            second = await reconciler.flush()
            return first, second

        first, second = asyncio.run(scenario())

        assert (first.synced, second.synced) == (1, 0)
        assert len(backend.requests) == 1

    def test_explicit_endpoint_and_token(self):
        backend = Backend()
        reconciler = _reconciler(backend)
        reconciler.engine.send_alert()

        asyncio.run(reconciler.flush("http://other.test/v2/", "other-token"))

        request = backend.requests[0]
        assert str(request.url) == "http://other.test/v2/sos/bulk-sync"
        assert request.headers["Authorization"] == "Bearer other-token"

    @pytest.mark.parametrize("status", [400, 401, 500, 503])
    def test_rejected_keeps_queues(self, status):
        reconciler = _reconciler(Backend(status))
        own = reconciler.engine.send_alert()

        result = asyncio.run(reconciler.flush())

        assert result.synced == 0
        assert not result.ok
        assert str(status) in result.error
        assert own.id in reconciler.engine.pending

    def test_network_error_keeps_queues(self):
        def unreachable(request):
            raise httpx.ConnectError("connection refused", request=request)

        reconciler = _reconciler(unreachable)
        reconciler.engine.send_alert()

        result = asyncio.run(reconciler.flush())

        assert result.synced == 0
        assert reconciler.engine.get_queue_stats().pending_count == 1

    def test_timeout_keeps_queues(self):
        def slow(request):
            raise httpx.ReadTimeout("read timed out", request=request)

        reconciler = _reconciler(slow)
        reconciler.engine.on_receive(_foreign("sos-peer"))

        result = asyncio.run(reconciler.flush())

        assert result.synced == 0
        assert "timed out" in result.error
        assert "sos-peer" in reconciler.engine.received

    def test_invalid_endpoint_keeps_queues(self):
        backend = Backend()
        reconciler = _reconciler(backend)
        own = reconciler.engine.send_alert()

        result = asyncio.run(reconciler.flush("http://[invalid"))

        assert result.synced == 0
        assert "invalid backend URL" in result.error
        assert own.id in reconciler.engine.pending
        assert backend.requests == []

    def test_synced_alert_replayed_later_not_resubmitted(self):
        backend = Backend()
        reconciler = _reconciler(backend)
        engine = reconciler.engine
        notified = []
        engine.add_listener(notified.append)
        engine.on_receive(_foreign("sos-peer"))

        async def scenario():
            first = await reconciler.flush()
            # Hub replays its history on reconnect, after the queues were cleared
            added = engine.ingest_history([_foreign("sos-peer")])
            second = await reconciler.flush()
            return first, added, second

        first, added, second = asyncio.run(scenario())

        assert (first.synced, added, second.synced) == (1, 0, 0)
        assert len(backend.requests) == 1
        assert len(notified) == 1

    def test_arrival_during_flush_survives(self):
        engine = PropagationEngine("SR-AAAAAA", StateStore.in_memory())
        engine.send_alert()

        def backend(request):
            engine.on_receive(_foreign("sos-late"))
            return httpx.Response(200, json={})

        reconciler = _reconciler(backend, engine=engine)
        result = asyncio.run(reconciler.flush())

        assert result.synced == 1
        assert list(engine.received) == ["sos-late"]
        assert engine.pending == {}

    def test_to_dict(self):
        assert SyncResult(synced=3).to_dict() == {"synced": 3}
        assert SyncResult(synced=0, error="boom").to_dict() == {"synced": 0, "error": "boom"}


# ═══════════════════════════════════════════════════════════════════════════
# Section 2: Backend client
# ═══════════════════════════════════════════════════════════════════════════

class TestBackendSyncClient:

    def test_no_token_no_header(self):
        backend = Backend()
        client = BackendSyncClient(API_URL, "", transport=httpx.MockTransport(backend))

        asyncio.run(client.bulk_sync([]))

        assert "Authorization" not in backend.requests[0].headers

    def test_failure_carries_backend_status(self):
        client = BackendSyncClient(API_URL, "t", transport=httpx.MockTransport(Backend(401)))

        with pytest.raises(SyncFailure) as excinfo:
            asyncio.run(client.bulk_sync([{"id": "x"}]))

        assert excinfo.value.backend_status == 401

    def test_non_json_ack(self):
        client = BackendSyncClient(
            API_URL, "t",
            transport=httpx.MockTransport(lambda request: httpx.Response(204)),
        )
        assert asyncio.run(client.bulk_sync([])) == {}


# ═══════════════════════════════════════════════════════════════════════════
# Section 3: Auto-flush
# ═══════════════════════════════════════════════════════════════════════════

class TestAutoFlush:

    def test_disabled_by_default(self):
        reconciler = _reconciler(Backend(), auto_flush_interval=0)
        assert reconciler.start_auto_flush() is False

    def test_periodic_flush(self):
        backend = Backend()
        reconciler = _reconciler(backend, auto_flush_interval=0.01)
        reconciler.engine.send_alert()

        async def scenario():
            assert reconciler.start_auto_flush()
            for _ in range(200):
                if reconciler.engine.get_queue_stats().total == 0:
                    break
                await asyncio.sleep(0.01)
            await reconciler.close()

        asyncio.run(scenario())

        assert reconciler.engine.pending == {}
        assert len(backend.requests) == 1
        assert reconciler.last_result is not None
