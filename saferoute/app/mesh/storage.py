"""
storage.py — Device-local persisted state.

A small JSON key/value file with an explicit lifecycle:

    store = StateStore("data/device_state.json")
    store.load()                 # at startup
    store.set("relay_url", "ws://192.168.43.1:8765")
    store.save()                 # synchronous write, same event-loop turn

Keys used by the system:

    device_id        — stable identifier, see identity.py
    pending          — alerts authored here, not yet backend-acknowledged
    received         — alerts learned from the network, not yet acknowledged
    relay_url        — operator override for the relay hub address

Writes go to a temporary file that is then renamed over the target, so a
crash mid-write leaves the previous state intact.
"""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional, Union

logger = logging.getLogger(__name__)


class StateStore:
    """Process-wide key/value state backed by one JSON file."""

    def __init__(self, path: Union[str, Path, None] = None):
        self.path: Optional[Path] = Path(path) if path else None
        self._data: Dict[str, Any] = {}

    @classmethod
    def in_memory(cls) -> "StateStore":
        """A store that never touches the filesystem."""
        return cls(None)

    def load(self) -> None:
        """Read state from disk. Missing or corrupt files start empty."""
        self._data = {}
        if self.path is None or not self.path.exists():
            return
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            logger.warning("State file %s unreadable (%s) — starting empty", self.path, exc)
            return
        if isinstance(raw, dict):
            self._data = raw
        else:
            logger.warning("State file %s is not an object — starting empty", self.path)

    def save(self) -> None:
        """Write state to disk."""
        if self.path is None:
            return
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        tmp.write_text(json.dumps(self._data, indent=2), encoding="utf-8")
        os.replace(tmp, self.path)

    def get(self, key: str, default: Any = None) -> Any:
        return self._data.get(key, default)

    def set(self, key: str, value: Any) -> None:
        self._data[key] = value

    def delete(self, key: str) -> None:
        self._data.pop(key, None)

    def __contains__(self, key: str) -> bool:
        return key in self._data

    def __repr__(self) -> str:
        return f"StateStore(path={self.path})"
