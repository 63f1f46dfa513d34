"""
models.py — Shared data structures for SOS alert propagation.

Defines:
    • AlertPriority   — high / medium / low (SOS is always high)
    • Location        — optional lat/lng pair attached to an alert
    • Alert           — the unit of propagation, with its wire codec
    • Peer            — informational record of another context on the bus
    • QueueStats      — read-only queue sizes for display
    • ReceiveOutcome  — what on_receive did with an inbound alert

═══════════════════════════════════════════════════════════════════════════
HOP COUNTING
═══════════════════════════════════════════════════════════════════════════

    Origin device      hop_count = 0     (send_alert)
    1st receiver       hop_count = 1     stored in received, relayed
    ...
    5th receiver       hop_count = 5     stored in received, relayed
    6th receiver       hop_count = 6     stored in received, NOT relayed

A receiver stores and relays the arrival with hop_count + 1, and relays
only while that value is <= MAX_HOPS.

═══════════════════════════════════════════════════════════════════════════
WIRE FORMAT
═══════════════════════════════════════════════════════════════════════════

    {
        "id": "sos-1718000000000-SR-4K2Q9Z-x7p1",
        "senderId": "SR-4K2Q9Z",
        "originDevice": "SR-4K2Q9Z",
        "timestamp": 1718000000000,
        "location": {"lat": 13.06, "lng": 80.25},     (optional)
        "message": "EMERGENCY! Need immediate help!",
        "priority": "high",
        "hopCount": 0
    }

Older relay clients send only id / senderId / timestamp / message, and
some send ``hops`` instead of ``hopCount``; both decode.
"""

from __future__ import annotations

import random
import string
import time
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Dict, Optional

from saferoute.app.core.errors import MessageParseError


MAX_HOPS = 5
DEFAULT_SOS_MESSAGE = "Emergency SOS - Need immediate assistance!"


# ═══════════════════════════════════════════════════════════════════════════
# Enums
# ═══════════════════════════════════════════════════════════════════════════

class AlertPriority(str, Enum):
    """Alert priority carried on the wire."""
    HIGH   = "high"
    MEDIUM = "medium"
    LOW    = "low"


class ReceiveOutcome(str, Enum):
    """Result of handing an inbound alert to the propagation engine."""
    ACCEPTED             = "accepted"              # stored, notified, relayed
    ACCEPTED_NOT_RELAYED = "accepted_not_relayed"  # stored, notified, hop limit hit
    DUPLICATE            = "duplicate"             # id already known, dropped


# ═══════════════════════════════════════════════════════════════════════════
# Data Structures
# ═══════════════════════════════════════════════════════════════════════════

def now_ms() -> int:
    return int(time.time() * 1000)


def _random_suffix(length: int = 4) -> str:
    alphabet = string.ascii_lowercase + string.digits
    return "".join(random.choices(alphabet, k=length))


def generate_alert_id(origin_device: str, timestamp_ms: int) -> str:
    """Timestamp + origin id + random suffix; collisions are first-seen-wins."""
    return f"sos-{timestamp_ms}-{origin_device}-{_random_suffix()}"


@dataclass(frozen=True)
class Location:
    """A latitude/longitude pair in decimal degrees."""
    lat: float
    lng: float

    def to_dict(self) -> Dict[str, float]:
        return {"lat": self.lat, "lng": self.lng}

    @classmethod
    def from_dict(cls, data: Any) -> Optional["Location"]:
        if data is None:
            return None
        try:
            lat, lng = float(data["lat"]), float(data["lng"])
        except (KeyError, TypeError, ValueError) as exc:
            raise MessageParseError("alert", f"invalid location: {data!r}") from exc
        # Same bounds the relay hub validates with; NaN fails both
        if not (-90.0 <= lat <= 90.0 and -180.0 <= lng <= 180.0):
            raise MessageParseError("alert", f"location out of range: {data!r}")
        return cls(lat=lat, lng=lng)


@dataclass(frozen=True)
class Alert:
    """
    An SOS alert.

    Attributes
    ----------
    id : str
        Globally unique, assigned by the origin device. Never changes.
    sender_id, origin_device : str
        Device that first created the alert.
    timestamp : int
        Creation time on the origin clock, epoch milliseconds.
    location : Location | None
        Absent when geolocation failed or timed out.
    message : str
        Free-text payload.
    priority : AlertPriority
    hop_count : int
        Number of relays so far; 0 at the origin.
    """
    id: str
    sender_id: str
    origin_device: str
    timestamp: int
    message: str = DEFAULT_SOS_MESSAGE
    location: Optional[Location] = None
    priority: AlertPriority = AlertPriority.HIGH
    hop_count: int = 0

    @classmethod
    def create(
        cls,
        device_id: str,
        *,
        location: Optional[Location] = None,
        message: Optional[str] = None,
    ) -> "Alert":
        """Build a fresh, hop-0, high-priority alert authored by ``device_id``."""
        ts = now_ms()
        return cls(
            id=generate_alert_id(device_id, ts),
            sender_id=device_id,
            origin_device=device_id,
            timestamp=ts,
            message=message or DEFAULT_SOS_MESSAGE,
            location=location,
            priority=AlertPriority.HIGH,
            hop_count=0,
        )

    def relayed(self) -> "Alert":
        """Copy of this alert one hop further along."""
        return replace(self, hop_count=self.hop_count + 1)

    @property
    def can_relay(self) -> bool:
        """True while this copy is still within the hop limit."""
        return self.hop_count <= MAX_HOPS

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "id": self.id,
            "senderId": self.sender_id,
            "originDevice": self.origin_device,
            "timestamp": self.timestamp,
            "message": self.message,
            "priority": self.priority.value,
            "hopCount": self.hop_count,
        }
        if self.location is not None:
            data["location"] = self.location.to_dict()
        return data

    @classmethod
    def from_dict(cls, data: Any) -> "Alert":
        """
        Decode a wire payload.

        Raises
        ------
        MessageParseError
            If required fields are missing or have the wrong type.
        """
        if not isinstance(data, dict):
            raise MessageParseError("alert", f"expected object, got {type(data).__name__}")

        alert_id = data.get("id")
        sender_id = data.get("senderId")
        if not alert_id or not isinstance(alert_id, str):
            raise MessageParseError("alert", "missing id")
        if not sender_id or not isinstance(sender_id, str):
            raise MessageParseError("alert", "missing senderId", alert_id=alert_id)

        timestamp = data.get("timestamp")
        if isinstance(timestamp, bool) or not isinstance(timestamp, (int, float)):
            raise MessageParseError("alert", "timestamp must be a number", alert_id=alert_id)

        hop_count = data.get("hopCount", data.get("hops", 0))
        if isinstance(hop_count, bool) or not isinstance(hop_count, int) or hop_count < 0:
            raise MessageParseError("alert", f"invalid hop count {hop_count!r}", alert_id=alert_id)

        try:
            priority = AlertPriority(data.get("priority", AlertPriority.HIGH.value))
        except ValueError as exc:
            raise MessageParseError(
                "alert", f"unknown priority {data.get('priority')!r}", alert_id=alert_id,
            ) from exc

        message = data.get("message")
        return cls(
            id=alert_id,
            sender_id=sender_id,
            origin_device=data.get("originDevice") or sender_id,
            timestamp=int(timestamp),
            message=str(message) if message is not None else DEFAULT_SOS_MESSAGE,
            location=Location.from_dict(data.get("location")),
            priority=priority,
            hop_count=hop_count,
        )


@dataclass
class Peer:
    """Another context seen on the in-process bus. Informational only."""
    id: str
    connected: bool = True
    last_seen: int = field(default_factory=now_ms)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "connected": self.connected,
            "lastSeen": self.last_seen,
        }


@dataclass(frozen=True)
class QueueStats:
    """Queue sizes for the "N SOS queued for sync" indicator."""
    pending_count: int
    received_count: int

    @property
    def total(self) -> int:
        return self.pending_count + self.received_count

    def to_dict(self) -> Dict[str, int]:
        return {
            "pendingCount": self.pending_count,
            "receivedCount": self.received_count,
            "total": self.total,
        }


@dataclass(frozen=True)
class AlertNotification:
    """Event handed to local listeners (UI haptics / audio / banner)."""
    alert: Alert
    channel: str
    replayed: bool = False
