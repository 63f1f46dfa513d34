"""
Device identity.

Each installation gets one opaque id (``SR-`` + six upper-case letters or
digits), generated on first use and persisted in the state store so it
survives restarts. It is the ``senderId`` / ``originDevice`` of every alert
this device authors.
"""

from __future__ import annotations

import logging
import random
import string

from saferoute.app.mesh.storage import StateStore

logger = logging.getLogger(__name__)

DEVICE_ID_KEY = "device_id"
DEVICE_ID_PREFIX = "SR-"


def generate_device_id() -> str:
    alphabet = string.ascii_uppercase + string.digits
    return DEVICE_ID_PREFIX + "".join(random.choices(alphabet, k=6))


class IdentityStore:
    """Idempotent accessor for the persisted device id."""

    def __init__(self, store: StateStore):
        self._store = store

    def get_device_id(self) -> str:
        device_id = self._store.get(DEVICE_ID_KEY)
        if isinstance(device_id, str) and device_id:
            return device_id

        device_id = generate_device_id()
        self._store.set(DEVICE_ID_KEY, device_id)
        self._store.save()
        logger.info("Generated device id %s", device_id, extra={"device_id": device_id})
        return device_id

    @property
    def connection_code(self) -> str:
        """Short code shown to users for pairing (id without prefix)."""
        return self.get_device_id()[len(DEVICE_ID_PREFIX):]
