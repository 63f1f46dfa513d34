"""
relay_client.py — WebSocket client for the LAN relay hub.

The relay hub is the only transport that crosses device boundaries. This
channel keeps one persistent socket open to it:

    ┌──────────────┐  connect (bounded by RELAY_CONNECT_TIMEOUT)
    │ DISCONNECTED │ ─────────────────────────────┐
    └──────▲───────┘                              ▼
           │ close / error               ┌──────────────┐
           │ wait RELAY_RECONNECT_DELAY  │  CONNECTING  │
           │                             └──────┬───────┘
           │                                    │ open
           │                             ┌──────▼───────┐
           └──────────────────────────── │  CONNECTED   │
                                         └──────────────┘

The loop repeats until ``disconnect()`` cancels it. Opening the socket is
the history request: the hub answers every new connection with
``SOS_HISTORY`` when it has any.

Inbound frames:
    SOS_BROADCAST  → on_message callbacks, one alert
    SOS_HISTORY    → on_history callbacks, list of missed alerts
Malformed frames are logged and dropped.

Outbound:
    {"type": "SOS", "data": <Alert wire dict>}
``send`` while not connected raises TransportUnavailable; nothing is
queued here, the alert stays in the engine's queues for the next flush.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Callable, List, Optional, Set

import websockets
from websockets.exceptions import WebSocketException

from saferoute.app.core.config import settings
from saferoute.app.core.errors import MessageParseError, TransportUnavailable
from saferoute.app.mesh.channels.base import ConnectionState, TransportChannel
from saferoute.app.mesh.models import Alert
from saferoute.app.mesh.storage import StateStore

logger = logging.getLogger(__name__)

RELAY_URL_KEY = "relay_url"


def resolve_relay_url(store: Optional[StateStore] = None) -> str:
    """Persisted operator override first, then RELAY_URL."""
    if store is not None:
        saved = store.get(RELAY_URL_KEY)
        if isinstance(saved, str) and saved:
            return saved
    return settings.RELAY_URL


def parse_frame(raw: Any) -> dict:
    """Decode one JSON text frame into an envelope dict."""
    if isinstance(raw, bytes):
        try:
            raw = raw.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise MessageParseError("relay_hub", "frame is not UTF-8") from exc
    try:
        envelope = json.loads(raw)
    except (TypeError, ValueError) as exc:
        raise MessageParseError("relay_hub", f"invalid JSON: {exc}") from exc
    if not isinstance(envelope, dict) or not isinstance(envelope.get("type"), str):
        raise MessageParseError("relay_hub", "envelope without type")
    return envelope


class RelayHubChannel(TransportChannel):
    """Persistent, self-reconnecting socket to a relay hub."""

    name = "relay_hub"

    def __init__(
        self,
        url: Optional[str] = None,
        *,
        store: Optional[StateStore] = None,
        reconnect_delay: Optional[float] = None,
        connect_timeout: Optional[float] = None,
        connect_factory: Callable[..., Any] = websockets.connect,
    ):
        super().__init__()
        self._store = store
        self.url = url or resolve_relay_url(store)
        self.reconnect_delay = (
            settings.RELAY_RECONNECT_DELAY if reconnect_delay is None else reconnect_delay
        )
        self.connect_timeout = (
            settings.RELAY_CONNECT_TIMEOUT if connect_timeout is None else connect_timeout
        )
        self._connect_factory = connect_factory
        self._ws: Any = None
        self._task: Optional[asyncio.Task] = None
        self._closing = False
        self._writes: Set[asyncio.Task] = set()
        self.connect_attempts = 0
        self.last_error: Optional[str] = None

    # ── Lifecycle ──

    async def connect(self) -> None:
        if self._task is not None and not self._task.done():
            return
        self._closing = False
        self._task = asyncio.get_running_loop().create_task(
            self._run(), name=f"relay-hub:{self.url}",
        )

    async def disconnect(self) -> None:
        self._closing = True
        task, self._task = self._task, None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        for write in list(self._writes):
            write.cancel()
        self._ws = None
        self._set_state(ConnectionState.DISCONNECTED)

    async def set_relay_url(self, url: str) -> None:
        """Persist a new hub address and reconnect to it."""
        self.url = url
        if self._store is not None:
            self._store.set(RELAY_URL_KEY, url)
            self._store.save()
        logger.info("Relay hub address set to %s", url)
        if self._task is not None:
            await self.disconnect()
            await self.connect()

    async def _run(self) -> None:
        while not self._closing:
            self._set_state(ConnectionState.CONNECTING)
            self.connect_attempts += 1
            try:
                await self._session()
            except (OSError, asyncio.TimeoutError, WebSocketException) as exc:
                self.last_error = str(exc) or type(exc).__name__
                logger.warning(
                    "Relay hub %s unreachable: %s", self.url, self.last_error,
                    extra={"channel": self.name},
                )
            finally:
                self._ws = None
                self._set_state(ConnectionState.DISCONNECTED)

            if self._closing:
                break
            logger.info("Reconnecting to relay hub in %.1fs", self.reconnect_delay)
            await asyncio.sleep(self.reconnect_delay)

    async def _session(self) -> None:
        async with self._connect_factory(self.url, open_timeout=self.connect_timeout) as ws:
            self._ws = ws
            self.last_error = None
            self._set_state(ConnectionState.CONNECTED)
            async for raw in ws:
                self.handle_frame(raw)

    # ── Outbound ──

    def send(self, alert: Alert) -> None:
        if not self.connected or self._ws is None:
            raise TransportUnavailable(self.name)
        frame = json.dumps({"type": "SOS", "data": alert.to_dict()})
        task = asyncio.get_running_loop().create_task(self._write(self._ws, frame, alert.id))
        self._writes.add(task)
        task.add_done_callback(self._writes.discard)

    async def _write(self, ws: Any, frame: str, alert_id: str) -> None:
        try:
            await ws.send(frame)
        except (OSError, WebSocketException) as exc:
            logger.warning(
                "Relay hub write failed for %s: %s", alert_id, exc,
                extra={"alert_id": alert_id, "channel": self.name},
            )

    # ── Inbound ──

    def handle_frame(self, raw: Any) -> None:
        """Dispatch one inbound frame; malformed frames are dropped."""
        try:
            envelope = parse_frame(raw)
            kind = envelope["type"]
            if kind == "SOS_BROADCAST":
                self._deliver(Alert.from_dict(envelope.get("data")))
            elif kind == "SOS_HISTORY":
                self._deliver_history(self._parse_history(envelope.get("messages")))
            else:
                logger.debug("[%s] ignoring frame type %r", self.name, kind)
        except MessageParseError as exc:
            logger.warning("[%s] dropped frame: %s", self.name, exc.message)

    def _parse_history(self, messages: Any) -> List[Alert]:
        if not isinstance(messages, list):
            raise MessageParseError("relay_hub", "SOS_HISTORY without messages list")
        alerts: List[Alert] = []
        for item in messages:
            try:
                alerts.append(Alert.from_dict(item))
            except MessageParseError as exc:
                logger.warning("[%s] skipped history entry: %s", self.name, exc.message)
        return alerts
