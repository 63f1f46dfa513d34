"""
local_bus.py — In-process publish/subscribe channel.

Delivers alerts between execution contexts of the same application
instance (several views, several engines in one process) with no network
involved. It is scoped to one ``LocalBus`` object and never leaves the
process, so it cannot be the only transport for cross-device delivery.

Message types on the bus:

    {"type": "SOS_BROADCAST", "payload": <Alert wire dict>}
    {"type": "PEER_ANNOUNCE", "deviceId": "SR-...", "timestamp": <ms>}
    {"type": "PEER_CONNECT_REQUEST", "fromId": "SR-...", "toId": "SR-...",
     "timestamp": <ms>}

A connect request is addressed: only the context whose device id is
``toId`` records the requester as a peer, and it answers with its own
PEER_ANNOUNCE so the requester learns about it too.

Delivery excludes the publishing channel and is iterative: a publish made
from inside a handler is queued and delivered after the current handler
returns, so relays never recurse into each other.
"""

from __future__ import annotations

import logging
from collections import deque
from typing import Any, Callable, Deque, Dict, List, Tuple

from saferoute.app.core.errors import MessageParseError, TransportUnavailable
from saferoute.app.mesh.channels.base import ConnectionState, TransportChannel
from saferoute.app.mesh.models import Alert, now_ms

logger = logging.getLogger(__name__)

SOS_BROADCAST = "SOS_BROADCAST"
PEER_ANNOUNCE = "PEER_ANNOUNCE"
PEER_CONNECT_REQUEST = "PEER_CONNECT_REQUEST"

PeerCallback = Callable[[str, int], Any]


class LocalBus:
    """The shared medium. One per application instance."""

    def __init__(self, name: str = "saferoute_mesh"):
        self.name = name
        self._subscribers: List["LocalBusChannel"] = []
        self._queue: Deque[Tuple["LocalBusChannel", Dict[str, Any]]] = deque()
        self._draining = False

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def subscribe(self, channel: "LocalBusChannel") -> None:
        if channel not in self._subscribers:
            self._subscribers.append(channel)

    def unsubscribe(self, channel: "LocalBusChannel") -> None:
        if channel in self._subscribers:
            self._subscribers.remove(channel)

    def publish(self, sender: "LocalBusChannel", envelope: Dict[str, Any]) -> None:
        self._queue.append((sender, envelope))
        if self._draining:
            return

        self._draining = True
        try:
            while self._queue:
                origin, message = self._queue.popleft()
                for subscriber in list(self._subscribers):
                    if subscriber is origin:
                        continue
                    try:
                        subscriber._receive(message)
                    except Exception:
                        logger.exception(
                            "Bus %s: handler of %s failed", self.name, subscriber,
                        )
        finally:
            self._draining = False


class LocalBusChannel(TransportChannel):
    """One context's view of a ``LocalBus``."""

    name = "local_bus"

    def __init__(self, bus: LocalBus, device_id: str):
        super().__init__()
        self.bus = bus
        self.device_id = device_id
        self._peer_callbacks: List[PeerCallback] = []

    async def connect(self) -> None:
        self.bus.subscribe(self)
        self._set_state(ConnectionState.CONNECTED)
        self.announce()

    async def disconnect(self) -> None:
        self.bus.unsubscribe(self)
        self._set_state(ConnectionState.DISCONNECTED)

    def announce(self) -> None:
        """Tell other contexts this device is present."""
        if not self.connected:
            raise TransportUnavailable(self.name)
        self.bus.publish(self, {
            "type": PEER_ANNOUNCE,
            "deviceId": self.device_id,
            "timestamp": now_ms(),
        })

    def connect_to_peer(self, peer_id: str) -> None:
        """Ask the context running ``peer_id`` to pair with this one."""
        if not self.connected:
            raise TransportUnavailable(self.name)
        self.bus.publish(self, {
            "type": PEER_CONNECT_REQUEST,
            "fromId": self.device_id,
            "toId": peer_id,
            "timestamp": now_ms(),
        })

    def send(self, alert: Alert) -> None:
        if not self.connected:
            raise TransportUnavailable(self.name)
        self.bus.publish(self, {"type": SOS_BROADCAST, "payload": alert.to_dict()})

    def on_peer(self, callback: PeerCallback) -> None:
        self._peer_callbacks.append(callback)

    def remove_callback(self, callback: Callable[..., Any]) -> None:
        super().remove_callback(callback)
        if callback in self._peer_callbacks:
            self._peer_callbacks.remove(callback)

    def _peer_seen(self, peer_id: Any, envelope: Dict[str, Any]) -> bool:
        if not isinstance(peer_id, str) or peer_id == self.device_id:
            return False
        try:
            timestamp = int(envelope.get("timestamp") or now_ms())
        except (TypeError, ValueError):
            timestamp = now_ms()
        for callback in list(self._peer_callbacks):
            callback(peer_id, timestamp)
        return True

    def _receive(self, envelope: Dict[str, Any]) -> None:
        kind = envelope.get("type")
        if kind == SOS_BROADCAST:
            try:
                alert = Alert.from_dict(envelope.get("payload"))
            except MessageParseError as exc:
                logger.warning("[%s] dropped frame: %s", self.name, exc.message)
                return
            self._deliver(alert)
        elif kind == PEER_ANNOUNCE:
            self._peer_seen(envelope.get("deviceId"), envelope)
        elif kind == PEER_CONNECT_REQUEST:
            if envelope.get("toId") != self.device_id:
                return
            if self._peer_seen(envelope.get("fromId"), envelope) and self.connected:
                self.announce()
        else:
            logger.debug("[%s] ignoring message type %r", self.name, kind)
