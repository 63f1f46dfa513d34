"""
shared_store.py — Storage-mediated fallback channel.

For setups without a live push path (devices sharing a synced folder or a
network mount), alerts are appended to one shared JSON file and every
device polls it on a fixed interval:

    send(alert)  → append to file (no duplicate ids, keep last 20)
    every 1 s    → read file, deliver entries not authored here and not
                   delivered before

Polling bounds staleness to one interval without any blocking wait. The
poll is a ``PeriodicTask`` cancelled by ``disconnect()``.
"""

from __future__ import annotations

import json
import logging
import os
from collections import OrderedDict
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from saferoute.app.core.config import settings
from saferoute.app.core.errors import MessageParseError, TransportUnavailable
from saferoute.app.mesh.channels.base import ConnectionState, TransportChannel
from saferoute.app.mesh.models import Alert
from saferoute.app.mesh.scheduling import PeriodicTask

logger = logging.getLogger(__name__)

SHARED_LIMIT = 20
SEEN_LIMIT = 500


class SharedStoreChannel(TransportChannel):
    """Alerts exchanged through a shared JSON file."""

    name = "shared_store"

    def __init__(
        self,
        path: Union[str, Path],
        device_id: str,
        *,
        poll_interval: Optional[float] = None,
    ):
        super().__init__()
        self.path = Path(path)
        self.device_id = device_id
        self.poll_interval = (
            settings.SHARED_POLL_INTERVAL if poll_interval is None else poll_interval
        )
        self._poller: Optional[PeriodicTask] = None
        self._seen: "OrderedDict[str, None]" = OrderedDict()

    async def connect(self) -> None:
        self._set_state(ConnectionState.CONNECTED)
        if self._poller is None:
            self._poller = PeriodicTask(self.poll_interval, self.poll, name="shared-store-poll")
        self._poller.start()

    async def disconnect(self) -> None:
        if self._poller is not None:
            self._poller.cancel()
            self._poller = None
        self._set_state(ConnectionState.DISCONNECTED)

    def _mark_seen(self, alert_id: str) -> None:
        self._seen[alert_id] = None
        while len(self._seen) > SEEN_LIMIT:
            self._seen.popitem(last=False)

    def _read(self) -> List[Dict[str, Any]]:
        if not self.path.exists():
            return []
        try:
            entries = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            raise MessageParseError("shared_store", f"unreadable file: {exc}") from exc
        if not isinstance(entries, list):
            raise MessageParseError("shared_store", "file does not hold a list")
        return entries

    def _write(self, entries: List[Dict[str, Any]]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        tmp.write_text(json.dumps(entries), encoding="utf-8")
        os.replace(tmp, self.path)

    def send(self, alert: Alert) -> None:
        if not self.connected:
            raise TransportUnavailable(self.name)

        try:
            entries = self._read()
        except MessageParseError as exc:
            logger.warning("[%s] %s — rewriting", self.name, exc.message)
            entries = []

        self._mark_seen(alert.id)
        if any(isinstance(e, dict) and e.get("id") == alert.id for e in entries):
            return
        entries.append(alert.to_dict())
        try:
            self._write(entries[-SHARED_LIMIT:])
        except OSError as exc:
            raise TransportUnavailable(self.name, f"write failed: {exc}") from exc

    def poll(self) -> int:
        """Deliver unseen foreign alerts from the file. Returns how many."""
        try:
            entries = self._read()
        except MessageParseError as exc:
            logger.warning("[%s] %s", self.name, exc.message)
            return 0

        delivered = 0
        for entry in entries:
            try:
                alert = Alert.from_dict(entry)
            except MessageParseError as exc:
                logger.warning("[%s] skipped entry: %s", self.name, exc.message)
                continue
            if alert.id in self._seen or alert.sender_id == self.device_id:
                continue
            self._mark_seen(alert.id)
            self._deliver(alert)
            delivered += 1
        return delivered
