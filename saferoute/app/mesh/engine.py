"""
engine.py — SOS propagation engine.

Owns the two alert queues of one device and drives every transport
channel uniformly:

    1. send_alert     — author a hop-0 alert, queue it in `pending`, fan out
    2. on_receive     — dedup by id, queue in `received`, notify, relay
    3. ingest_history — bulk-add missed alerts replayed by the relay hub
    4. clear_synced   — drop alerts the backend acknowledged
    5. connect_to_peer — record a peer by id or code, send it a pairing request

═══════════════════════════════════════════════════════════════════════════
RECEIVE FLOW
═══════════════════════════════════════════════════════════════════════════

    ┌─────────────────────┐
    │  channel delivers   │  relay hub / local bus / shared file
    │  alert (hop = h)    │
    └─────────┬───────────┘
              │
              ▼
    ┌─────────────────────┐
    │  1. Dedup           │  id seen before (queued or synced) → DUPLICATE
    └─────────┬───────────┘
              │
              ▼
    ┌─────────────────────┐
    │  2. Queue           │  received[id] = copy with hop = h + 1
    │     + persist       │  state file written in the same turn
    └─────────┬───────────┘
              │
              ▼
    ┌─────────────────────┐
    │  3. Notify          │  listeners get AlertNotification (UI alarm)
    └─────────┬───────────┘
              │
              ▼
    ┌─────────────────────┐
    │  4. Relay           │  h + 1 <= MAX_HOPS → send copy on EVERY channel
    └─────────────────────┘  (no source exclusion: each channel reaches a
                              different population)

═══════════════════════════════════════════════════════════════════════════
FAILURE POLICY
═══════════════════════════════════════════════════════════════════════════

    • A channel that is down raises TransportUnavailable; the engine logs it
      and moves on to the next channel. The alert stays queued for flush.
    • send_alert never raises because of a transport.
    • A failing notification listener is logged and does not stop relaying.

All of this runs synchronously inside one event-loop turn, so the queue
dicts need no locking.
"""

from __future__ import annotations

import logging
from collections import OrderedDict
from typing import Any, Callable, Dict, Iterable, List, Optional

from saferoute.app.core.config import settings
from saferoute.app.core.errors import MessageParseError, TransportUnavailable
from saferoute.app.mesh.channels.base import TransportChannel
from saferoute.app.mesh.identity import DEVICE_ID_PREFIX
from saferoute.app.mesh.models import (
    Alert,
    AlertNotification,
    Location,
    MAX_HOPS,
    Peer,
    QueueStats,
    ReceiveOutcome,
    now_ms,
)
from saferoute.app.mesh.storage import StateStore

logger = logging.getLogger(__name__)

PENDING_KEY = "pending"
RECEIVED_KEY = "received"
SEEN_KEY = "seen"

NotificationListener = Callable[[AlertNotification], Any]


def _channel_name(channel: Optional[TransportChannel]) -> str:
    return channel.name if channel is not None else "direct"


class PropagationEngine:
    """
    Pending/received queues, dedup, hop bounding and fan-out for one device.

    Usage:
        engine = PropagationEngine(device_id, store, channels=[bus, relay])
        await engine.start()
        alert = engine.send_alert(Location(13.06, 80.25), "Need help")
        engine.get_queue_stats()
    """

    def __init__(
        self,
        device_id: str,
        store: StateStore,
        *,
        channels: Iterable[TransportChannel] = (),
        max_queue_size: Optional[int] = None,
        seen_limit: Optional[int] = None,
    ):
        self.device_id = device_id
        self._store = store
        self.max_queue_size = max_queue_size or settings.MAX_QUEUE_SIZE
        self.seen_limit = seen_limit or settings.SEEN_ID_LIMIT
        self.pending: Dict[str, Alert] = {}
        self.received: Dict[str, Alert] = {}
        # Every id accepted or authored here, oldest first. Survives clear_synced.
        self.seen: "OrderedDict[str, None]" = OrderedDict()
        self.peers: Dict[str, Peer] = {}
        self._channels: List[TransportChannel] = []
        self._listeners: List[NotificationListener] = []

        self.load()
        for channel in channels:
            self.add_channel(channel)

    # ═══════════════════════════════════════════════════════════════════
    # Persistence
    # ═══════════════════════════════════════════════════════════════════

    def load(self) -> None:
        """Restore both queues and the seen ids from the state store."""
        self.pending = self._load_queue(PENDING_KEY)
        self.received = self._load_queue(RECEIVED_KEY)
        self.seen = OrderedDict()
        for alert_id in self._store.get(SEEN_KEY) or []:
            self._mark_seen(str(alert_id))
        for alert_id in list(self.pending) + list(self.received):
            self._mark_seen(alert_id)
        if self.pending or self.received:
            logger.info(
                "Restored %d pending / %d received alerts",
                len(self.pending), len(self.received),
            )

    def _load_queue(self, key: str) -> Dict[str, Alert]:
        queue: Dict[str, Alert] = {}
        for entry in self._store.get(key) or []:
            try:
                alert = Alert.from_dict(entry)
            except MessageParseError as exc:
                logger.warning("Dropping stored %s entry: %s", key, exc.message)
                continue
            self._put(queue, alert)
        return queue

    def save(self) -> None:
        self._store.set(PENDING_KEY, [a.to_dict() for a in self.pending.values()])
        self._store.set(RECEIVED_KEY, [a.to_dict() for a in self.received.values()])
        self._store.set(SEEN_KEY, list(self.seen))
        self._store.save()

    def _put(self, queue: Dict[str, Alert], alert: Alert) -> None:
        queue[alert.id] = alert
        while len(queue) > self.max_queue_size:
            evicted = next(iter(queue))
            del queue[evicted]
            logger.warning("Queue full — evicted oldest alert %s", evicted,
                           extra={"alert_id": evicted})

    def _mark_seen(self, alert_id: str) -> None:
        self.seen[alert_id] = None
        self.seen.move_to_end(alert_id)
        while len(self.seen) > self.seen_limit:
            self.seen.popitem(last=False)

    # ═══════════════════════════════════════════════════════════════════
    # Channels & listeners
    # ═══════════════════════════════════════════════════════════════════

    @property
    def channels(self) -> List[TransportChannel]:
        return list(self._channels)

    def add_channel(self, channel: TransportChannel) -> None:
        if channel in self._channels:
            return
        self._channels.append(channel)
        channel.on_message(self.on_receive)
        channel.on_history(self.ingest_history)
        on_peer = getattr(channel, "on_peer", None)
        if on_peer is not None:
            on_peer(self._on_peer)

    def remove_channel(self, channel: TransportChannel) -> None:
        """Stop sending on ``channel`` and ignore what it delivers."""
        if channel not in self._channels:
            return
        self._channels.remove(channel)
        for callback in (self.on_receive, self.ingest_history, self._on_peer):
            channel.remove_callback(callback)

    def add_listener(self, listener: NotificationListener) -> None:
        """Register a callback for local alarm notifications."""
        self._listeners.append(listener)

    async def start(self) -> None:
        for channel in self._channels:
            await channel.connect()

    async def stop(self) -> None:
        for channel in self._channels:
            await channel.disconnect()
        self.save()

    def _on_peer(self, peer_id: str, timestamp: int) -> None:
        peer = self.peers.get(peer_id)
        if peer is None:
            self.peers[peer_id] = Peer(id=peer_id, connected=True, last_seen=timestamp)
            logger.info("Peer discovered: %s", peer_id, extra={"device_id": peer_id})
        else:
            peer.connected = True
            peer.last_seen = max(peer.last_seen, timestamp)

    def connect_to_peer(self, peer: str) -> Peer:
        """
        Pair with another device by id or by its connection code.

        The peer is recorded right away; channels that support addressed
        pairing (the local bus) also send it a connect request.
        """
        peer_id = peer.strip().upper()
        if not peer_id.startswith(DEVICE_ID_PREFIX):
            peer_id = DEVICE_ID_PREFIX + peer_id

        self._on_peer(peer_id, now_ms())
        for channel in list(self._channels):
            request = getattr(channel, "connect_to_peer", None)
            if request is None:
                continue
            try:
                request(peer_id)
            except TransportUnavailable as exc:
                logger.debug("Connect request to %s not sent on %s: %s",
                             peer_id, channel.name, exc.message,
                             extra={"device_id": peer_id, "channel": channel.name})
        return self.peers[peer_id]

    def _notify(self, notification: AlertNotification) -> None:
        for listener in list(self._listeners):
            try:
                listener(notification)
            except Exception:
                logger.exception("Notification listener failed for %s", notification.alert.id)

    # ═══════════════════════════════════════════════════════════════════
    # Fan-out
    # ═══════════════════════════════════════════════════════════════════

    def _broadcast(self, alert: Alert) -> int:
        """Send on every channel; returns how many accepted it."""
        accepted = 0
        for channel in list(self._channels):
            try:
                channel.send(alert)
                accepted += 1
            except TransportUnavailable as exc:
                logger.debug(
                    "Skipping %s for %s: %s", channel.name, alert.id, exc.message,
                    extra={"alert_id": alert.id, "channel": channel.name},
                )
        return accepted

    # ═══════════════════════════════════════════════════════════════════
    # Operations
    # ═══════════════════════════════════════════════════════════════════

    def send_alert(
        self,
        location: Optional[Location] = None,
        message: Optional[str] = None,
    ) -> Alert:
        """
        Author a new SOS alert and fan it out.

        Parameters
        ----------
        location : Location | None
            Omitted from the alert when None.
        message : str | None
            Free text; a default SOS text is used when empty.

        Returns
        -------
        Alert
            The created alert (hop_count 0), already queued in `pending`.
        """
        alert = Alert.create(self.device_id, location=location, message=message)
        self._put(self.pending, alert)
        self._mark_seen(alert.id)
        self.save()

        accepted = self._broadcast(alert)
        logger.warning(
            "SOS %s sent on %d/%d channels%s",
            alert.id, accepted, len(self._channels),
            "" if location else " (no location)",
            extra={"alert_id": alert.id, "hop_count": 0},
        )
        return alert

    def is_known(self, alert_id: str) -> bool:
        """True for ids still queued and for ids already synced and cleared."""
        return alert_id in self.seen or alert_id in self.received or alert_id in self.pending

    def on_receive(
        self,
        alert: Alert,
        channel: Optional[TransportChannel] = None,
    ) -> ReceiveOutcome:
        """
        Handle an alert that arrived from the network.

        First-seen wins: a second arrival with a known id is dropped, even
        if its content differs.
        """
        source = _channel_name(channel)
        if self.is_known(alert.id):
            logger.debug("Duplicate %s via %s dropped", alert.id, source,
                         extra={"alert_id": alert.id, "channel": source})
            return ReceiveOutcome.DUPLICATE

        arrived = alert.relayed()
        self._put(self.received, arrived)
        self._mark_seen(arrived.id)
        self.save()

        logger.warning(
            "SOS %s from %s received via %s (hop %d)",
            arrived.id, arrived.origin_device, source, arrived.hop_count,
            extra={"alert_id": arrived.id, "hop_count": arrived.hop_count, "channel": source},
        )
        self._notify(AlertNotification(alert=arrived, channel=source))

        if not arrived.can_relay:
            logger.info(
                "Hop limit %d reached for %s — not relaying", MAX_HOPS, arrived.id,
                extra={"alert_id": arrived.id, "hop_count": arrived.hop_count},
            )
            return ReceiveOutcome.ACCEPTED_NOT_RELAYED

        self._broadcast(arrived)
        return ReceiveOutcome.ACCEPTED

    def ingest_history(
        self,
        alerts: Iterable[Alert],
        channel: Optional[TransportChannel] = None,
    ) -> int:
        """
        Add alerts the relay hub replayed on connect.

        They are queued and notified like live arrivals but not relayed:
        the hub already delivered them to everyone connected at the time.
        """
        source = _channel_name(channel)
        added: List[Alert] = []
        for alert in alerts:
            if self.is_known(alert.id):
                continue
            arrived = alert.relayed()
            self._put(self.received, arrived)
            self._mark_seen(arrived.id)
            added.append(arrived)

        if not added:
            return 0

        self.save()
        logger.info("Replayed %d missed alerts via %s", len(added), source,
                    extra={"channel": source})
        for arrived in added:
            self._notify(AlertNotification(alert=arrived, channel=source, replayed=True))
        return len(added)

    def queued_alerts(self) -> List[Alert]:
        """Everything not yet acknowledged by the backend, pending first."""
        return list(self.pending.values()) + list(self.received.values())

    def clear_synced(self, alert_ids: Iterable[str]) -> int:
        """
        Remove acknowledged alerts from both queues; returns how many.

        The ids stay in `seen`, so a later replay of the same alert is still
        a duplicate.
        """
        removed = 0
        for alert_id in alert_ids:
            if self.pending.pop(alert_id, None) is not None:
                removed += 1
            if self.received.pop(alert_id, None) is not None:
                removed += 1
        self.save()
        return removed

    def get_queue_stats(self) -> QueueStats:
        return QueueStats(
            pending_count=len(self.pending),
            received_count=len(self.received),
        )
