"""
hub.py — Relay hub core: client registry, bounded history, fan-out.

The hub is the only component that moves alerts between devices. It is a
star: every device keeps one socket to it, and every SOS one device sends
is rebroadcast to all the others.

═══════════════════════════════════════════════════════════════════════════
PROTOCOL (JSON text frames)
═══════════════════════════════════════════════════════════════════════════

    client → hub        {"type": "SOS", "data": <Alert>}
    hub → other clients {"type": "SOS_BROADCAST", "data": <same payload>}
    hub → new client    {"type": "SOS_HISTORY", "messages": [<Alert>, ...]}

Delivery is at-least-once and unordered. The hub does not dedup what it
forwards; receivers drop repeats by alert id. It only keeps its own history
free of repeated ids so a reconnecting device is not replayed the same
alert twice. Ids are only remembered while their alert is in the bounded
history, so a flood of distinct ids cannot grow the hub's memory.

Clients are anything with ``async send_text(str)``: a Starlette WebSocket
in production, a plain object in tests. All state is touched from the one
event loop, so a broadcast cannot interleave with another message.
"""

from __future__ import annotations

import json
import logging
from collections import OrderedDict
from typing import Any, Dict, List, Optional, Protocol

from pydantic import ValidationError

from saferoute.app.api.schemas import SOSEnvelope
from saferoute.app.core.config import settings

logger = logging.getLogger(__name__)


class HubClient(Protocol):
    async def send_text(self, data: str) -> None:
        ...


class RelayHub:
    """
    In-memory relay state for one hub process.

    Usage:
        hub = RelayHub()
        await hub.register(ws)
        await hub.handle_message(ws, raw_text)
        hub.unregister(ws)
    """

    def __init__(self, history_limit: Optional[int] = None):
        self.history_limit = history_limit or settings.RELAY_HISTORY_LIMIT
        self._clients: List[HubClient] = []
        # id → payload, oldest first; the only per-id state the hub keeps
        self._history: "OrderedDict[str, Dict[str, Any]]" = OrderedDict()
        self._accepted = 0

    # ── State ──

    @property
    def client_count(self) -> int:
        return len(self._clients)

    @property
    def sos_count(self) -> int:
        """SOS alerts added to history since start."""
        return self._accepted

    @property
    def history(self) -> List[Dict[str, Any]]:
        return list(self._history.values())

    def status(self) -> Dict[str, Any]:
        return {"status": "ok", "clients": self.client_count, "sos_count": self.sos_count}

    # ── Connections ──

    async def register(self, client: HubClient) -> None:
        """Add a client and replay history to it alone."""
        if client not in self._clients:
            self._clients.append(client)
        logger.info("Client connected (%d total)", self.client_count,
                    extra={"clients": self.client_count})

        if self._history:
            frame = json.dumps({"type": "SOS_HISTORY", "messages": self.history})
            if not await self._send(client, frame):
                self.unregister(client)

    def unregister(self, client: HubClient) -> None:
        if client in self._clients:
            self._clients.remove(client)
            logger.info("Client disconnected (%d total)", self.client_count,
                        extra={"clients": self.client_count})

    # ── Messages ──

    async def handle_message(self, sender: HubClient, raw: str) -> int:
        """
        Process one frame from ``sender``.

        Returns
        -------
        int
            Number of clients the frame was rebroadcast to (0 for invalid
            or ignored frames).
        """
        try:
            message = json.loads(raw)
        except (TypeError, ValueError) as exc:
            logger.warning("Dropped non-JSON frame: %s", exc)
            return 0

        if not isinstance(message, dict) or message.get("type") != "SOS":
            logger.debug("Ignoring frame type %r",
                         message.get("type") if isinstance(message, dict) else None)
            return 0

        try:
            envelope = SOSEnvelope.model_validate(message)
        except ValidationError as exc:
            logger.warning("Dropped invalid SOS frame: %d error(s)", exc.error_count())
            return 0

        payload = message["data"]
        alert_id = envelope.data.id
        if alert_id not in self._history:
            self._remember(alert_id, payload)
            logger.warning(
                "SOS %s from %s accepted", alert_id, envelope.data.senderId,
                extra={"alert_id": alert_id},
            )

        return await self.broadcast(
            json.dumps({"type": "SOS_BROADCAST", "data": payload}),
            exclude=sender,
        )

    def _remember(self, alert_id: str, payload: Dict[str, Any]) -> None:
        self._history[alert_id] = payload
        self._accepted += 1
        while len(self._history) > self.history_limit:
            self._history.popitem(last=False)

    async def broadcast(self, frame: str, *, exclude: Optional[HubClient] = None) -> int:
        """Send ``frame`` to every client but ``exclude``; drop dead ones."""
        delivered = 0
        dead: List[HubClient] = []
        for client in list(self._clients):
            if client is exclude:
                continue
            if await self._send(client, frame):
                delivered += 1
            else:
                dead.append(client)

        for client in dead:
            self.unregister(client)
        return delivered

    async def _send(self, client: HubClient, frame: str) -> bool:
        try:
            await client.send_text(frame)
        except Exception as exc:
            logger.warning("Send to client failed: %s", exc or type(exc).__name__)
            return False
        return True
