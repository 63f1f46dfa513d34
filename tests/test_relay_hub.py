"""
test_relay_hub.py — Tests for the LAN relay hub.

Covers:
    • Fan-out to every client except the sender
    • History replay to newly connected clients only
    • History bounding and id-unique history, cumulative sos_count
    • Id tracking bounded by the history limit under a flood of ids
    • Invalid frames dropped without closing anything
    • Clients whose send fails are deregistered
    • FastAPI surface: WebSocket "/", GET /health, GET /sos, 404 envelope

Run with:
    pytest tests/test_relay_hub.py -v
"""

from __future__ import annotations

import asyncio
import json
import time
from typing import List

import pytest
from fastapi.testclient import TestClient

from saferoute.app.main import create_app
from saferoute.app.relay.hub import RelayHub


# ═══════════════════════════════════════════════════════════════════════════
# Test Fixtures
# ═══════════════════════════════════════════════════════════════════════════

def _payload(alert_id: str = "sos-1718000000000-SR-AAAAAA-ab12") -> dict:
    return {
        "id": alert_id,
        "senderId": "SR-AAAAAA",
        "originDevice": "SR-AAAAAA",
        "timestamp": 1718000000000,
        "location": {"lat": 13.06, "lng": 80.25},
        "message": "EMERGENCY! Need immediate help!",
        "priority": "high",
        "hopCount": 0,
    }


def _sos(alert_id: str = "sos-1718000000000-SR-AAAAAA-ab12") -> str:
    return json.dumps({"type": "SOS", "data": _payload(alert_id)})


class FakeClient:
    def __init__(self, fail: bool = False):
        self.fail = fail
        self.frames: List[dict] = []

    async def send_text(self, data: str) -> None:
        if self.fail:
            raise RuntimeError("socket closed")
        self.frames.append(json.loads(data))


def _run(coro):
    return asyncio.run(coro)


# ═══════════════════════════════════════════════════════════════════════════
# Section 1: Hub core
# ═══════════════════════════════════════════════════════════════════════════

class TestFanOut:

    def test_three_clients_two_deliveries(self):
        hub = RelayHub()
        a, b, c = FakeClient(), FakeClient(), FakeClient()

        async def scenario():
            for client in (a, b, c):
                await hub.register(client)
            return await hub.handle_message(a, _sos())

        delivered = _run(scenario())

        assert delivered == 2
        assert a.frames == []
        expected = {"type": "SOS_BROADCAST", "data": _payload()}
        assert b.frames == [expected]
        assert c.frames == [expected]
        assert hub.history == [_payload()]

    def test_payload_forwarded_unchanged(self):
        hub = RelayHub()
        a, b = FakeClient(), FakeClient()
        payload = dict(_payload(), hopCount=3, extra="kept")

        async def scenario():
            await hub.register(a)
            await hub.register(b)
            await hub.handle_message(a, json.dumps({"type": "SOS", "data": payload}))

        _run(scenario())
        assert b.frames[0]["data"] == payload

    def test_duplicate_id_rebroadcast_but_stored_once(self):
        hub = RelayHub()
        a, b = FakeClient(), FakeClient()

        async def scenario():
            await hub.register(a)
            await hub.register(b)
            first = await hub.handle_message(a, _sos())
            second = await hub.handle_message(b, _sos())
            return first, second

        assert _run(scenario()) == (1, 1)
        assert len(hub.history) == 1
        assert hub.sos_count == 1
        assert len(a.frames) == 1
        assert len(b.frames) == 1


class TestHistory:

    def test_new_client_gets_history_only_once(self):
        hub = RelayHub()
        a, b, late = FakeClient(), FakeClient(), FakeClient()

        async def scenario():
            await hub.register(a)
            await hub.register(b)
            await hub.handle_message(a, _sos())
            await hub.register(late)

        _run(scenario())

        assert late.frames == [{"type": "SOS_HISTORY", "messages": [_payload()]}]
        assert len(b.frames) == 1

    def test_empty_history_sends_nothing(self):
        hub = RelayHub()
        client = FakeClient()
        _run(hub.register(client))
        assert client.frames == []

    def test_bounded_drop_oldest(self):
        hub = RelayHub(history_limit=3)
        sender = FakeClient()

        async def scenario():
            await hub.register(sender)
            for i in range(5):
                await hub.handle_message(sender, _sos(f"sos-{i}"))

        _run(scenario())

        assert [entry["id"] for entry in hub.history] == ["sos-2", "sos-3", "sos-4"]
        assert hub.sos_count == 5

    def test_id_flood_keeps_memory_bounded(self):
        hub = RelayHub(history_limit=5)
        sender = FakeClient()

        async def scenario():
            await hub.register(sender)
            for i in range(2000):
                await hub.handle_message(sender, _sos(f"sos-flood-{i}"))

        _run(scenario())

        assert len(hub._history) == 5
        assert hub.sos_count == 2000
        assert hub.history[-1]["id"] == "sos-flood-1999"

    def test_id_aged_out_of_history_is_stored_again(self):
        hub = RelayHub(history_limit=2)
        sender = FakeClient()

        async def scenario():
            await hub.register(sender)
            for alert_id in ("sos-0", "sos-1", "sos-2", "sos-0"):
                await hub.handle_message(sender, _sos(alert_id))

        _run(scenario())

        assert [entry["id"] for entry in hub.history] == ["sos-2", "sos-0"]
        assert hub.sos_count == 4


class TestInvalidFrames:

    @pytest.mark.parametrize("raw", [
        "not json",
        json.dumps([1, 2]),
        json.dumps({"type": "SOS"}),
        json.dumps({"type": "SOS", "data": {"senderId": "SR-AAAAAA", "timestamp": 1}}),
        json.dumps({"type": "SOS", "data": {"id": "x", "senderId": "SR-AAAAAA", "timestamp": "soon"}}),
        json.dumps({"type": "SOS", "data": dict(_payload(), location={"lat": 500, "lng": 0})}),
        json.dumps({"type": "PING"}),
    ])
    def test_dropped(self, raw):
        hub = RelayHub()
        a, b = FakeClient(), FakeClient()

        async def scenario():
            await hub.register(a)
            await hub.register(b)
            return await hub.handle_message(a, raw)

        assert _run(scenario()) == 0
        assert b.frames == []
        assert hub.history == []
        assert hub.client_count == 2


class TestClientFailures:

    def test_failed_send_deregisters(self):
        hub = RelayHub()
        sender, healthy, dead = FakeClient(), FakeClient(), FakeClient(fail=True)

        async def scenario():
            for client in (sender, healthy, dead):
                await hub.register(client)
            return await hub.handle_message(sender, _sos())

        assert _run(scenario()) == 1
        assert hub.client_count == 2
        assert hub.status() == {"status": "ok", "clients": 2, "sos_count": 1}

    def test_failed_history_replay_deregisters(self):
        hub = RelayHub()
        sender = FakeClient()

        async def scenario():
            await hub.register(sender)
            await hub.handle_message(sender, _sos())
            await hub.register(FakeClient(fail=True))

        _run(scenario())
        assert hub.client_count == 1

    def test_unregister_unknown_is_noop(self):
        hub = RelayHub()
        hub.unregister(FakeClient())
        assert hub.client_count == 0


# ═══════════════════════════════════════════════════════════════════════════
# Section 2: HTTP / WebSocket surface
# ═══════════════════════════════════════════════════════════════════════════

def _wait_for_clients(client: TestClient, expected: int) -> dict:
    for _ in range(200):
        health = client.get("/health").json()
        if health["clients"] == expected:
            return health
        time.sleep(0.01)
    raise AssertionError(f"hub never reached {expected} clients")


class TestRelayAPI:

    def test_health_empty(self):
        with TestClient(create_app(RelayHub())) as client:
            response = client.get("/health")
        assert response.status_code == 200
        assert response.json() == {"status": "ok", "clients": 0, "sos_count": 0}

    def test_websocket_fan_out_and_history(self):
        with TestClient(create_app(RelayHub())) as client:
            with client.websocket_connect("/") as a, \
                    client.websocket_connect("/") as b, \
                    client.websocket_connect("/") as c:
                _wait_for_clients(client, 3)

                a.send_text(_sos())
                expected = {"type": "SOS_BROADCAST", "data": _payload()}
                assert b.receive_json() == expected
                assert c.receive_json() == expected

                assert client.get("/health").json() == {"status": "ok", "clients": 3, "sos_count": 1}
                assert client.get("/sos").json() == [_payload()]

                with client.websocket_connect("/") as late:
                    assert late.receive_json() == {"type": "SOS_HISTORY", "messages": [_payload()]}

            health = _wait_for_clients(client, 0)
            assert health["sos_count"] == 1

    def test_malformed_frame_keeps_connection(self):
        with TestClient(create_app(RelayHub())) as client:
            with client.websocket_connect("/") as a, client.websocket_connect("/") as b:
                _wait_for_clients(client, 2)

                a.send_text("{broken")
                a.send_text(_sos("sos-after-garbage"))

                assert b.receive_json()["data"]["id"] == "sos-after-garbage"

    def test_unknown_path_error_envelope(self):
        with TestClient(create_app(RelayHub())) as client:
            response = client.get("/does-not-exist")
        assert response.status_code == 404
        body = response.json()
        assert body["error"]["code"] == "NOT_FOUND"
        assert body["error"]["status"] == 404

    def test_cors_open(self):
        with TestClient(create_app(RelayHub())) as client:
            response = client.get("/health", headers={"Origin": "http://192.168.43.20:3000"})
        assert response.headers["access-control-allow-origin"] == "*"
