"""
node.py — One device, fully wired.

    store ──► identity ──► device_id
      │                        │
      └──────► PropagationEngine ◄── LocalBusChannel   (when a bus is given)
                    │            ◄── RelayHubChannel   (always, self-healing)
                    │            ◄── SharedStoreChannel (SHARED_STORE_PATH)
                    ▼
              SyncReconciler ──► BackendSyncClient

Usage:
    node = MeshNode.from_settings()
    await node.start()
    await node.raise_sos("Trapped on 2nd floor")
    await node.flush()
    await node.stop()
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Callable, Dict, Optional, Union

from saferoute.app.core.config import settings
from saferoute.app.mesh.channels.backend_sync import BackendSyncClient
from saferoute.app.mesh.channels.local_bus import LocalBus, LocalBusChannel
from saferoute.app.mesh.channels.relay_client import RelayHubChannel
from saferoute.app.mesh.channels.shared_store import SharedStoreChannel
from saferoute.app.mesh.engine import PropagationEngine
from saferoute.app.mesh.geolocation import LocationProvider, acquire_location
from saferoute.app.mesh.identity import IdentityStore
from saferoute.app.mesh.models import Alert, Peer
from saferoute.app.mesh.storage import StateStore
from saferoute.app.mesh.sync import SyncReconciler, SyncResult

logger = logging.getLogger(__name__)


class MeshNode:
    def __init__(
        self,
        store: StateStore,
        *,
        bus: Optional[LocalBus] = None,
        relay_url: Optional[str] = None,
        enable_relay: bool = True,
        shared_store_path: Union[str, Path, None] = None,
        sync_client: Optional[BackendSyncClient] = None,
        location_provider: Optional[LocationProvider] = None,
        relay_connect_factory: Optional[Callable[..., Any]] = None,
    ):
        self.store = store
        self.store.load()
        self.identity = IdentityStore(store)
        self.device_id = self.identity.get_device_id()
        self.location_provider = location_provider

        self.engine = PropagationEngine(self.device_id, store)

        self.bus_channel: Optional[LocalBusChannel] = None
        if bus is not None:
            self.bus_channel = LocalBusChannel(bus, self.device_id)
            self.engine.add_channel(self.bus_channel)

        self.relay_channel: Optional[RelayHubChannel] = None
        if enable_relay:
            kwargs: Dict[str, Any] = {"store": store}
            if relay_connect_factory is not None:
                kwargs["connect_factory"] = relay_connect_factory
            self.relay_channel = RelayHubChannel(relay_url, **kwargs)
            self.engine.add_channel(self.relay_channel)

        self.shared_channel: Optional[SharedStoreChannel] = None
        if shared_store_path:
            self.shared_channel = SharedStoreChannel(shared_store_path, self.device_id)
            self.engine.add_channel(self.shared_channel)

        self.reconciler = SyncReconciler(self.engine, sync_client)

    @classmethod
    def from_settings(
        cls,
        *,
        bus: Optional[LocalBus] = None,
        location_provider: Optional[LocationProvider] = None,
    ) -> "MeshNode":
        """Build a node from STATE_FILE, RELAY_URL and SHARED_STORE_PATH."""
        return cls(
            StateStore(settings.STATE_FILE),
            bus=bus,
            shared_store_path=settings.SHARED_STORE_PATH,
            location_provider=location_provider,
        )

    async def start(self) -> None:
        await self.engine.start()
        self.reconciler.start_auto_flush()
        logger.info(
            "Node %s up on %d channels", self.device_id, len(self.engine.channels),
            extra={"device_id": self.device_id},
        )

    async def stop(self) -> None:
        await self.reconciler.close()
        await self.engine.stop()
        logger.info("Node %s stopped", self.device_id, extra={"device_id": self.device_id})

    async def raise_sos(self, message: Optional[str] = None) -> Alert:
        """SOS button: bounded location lookup, then send regardless."""
        location = await acquire_location(self.location_provider)
        return self.engine.send_alert(location, message)

    async def flush(
        self,
        api_endpoint: Optional[str] = None,
        auth_token: Optional[str] = None,
    ) -> SyncResult:
        return await self.reconciler.flush(api_endpoint, auth_token)

    def connect_to_peer(self, code: str) -> Peer:
        """Pair with the device whose connection code (or id) the user typed."""
        return self.engine.connect_to_peer(code)

    def status(self) -> Dict[str, Any]:
        return {
            "deviceId": self.device_id,
            "channels": {ch.name: ch.state.value for ch in self.engine.channels},
            "queue": self.engine.get_queue_stats().to_dict(),
            "peers": [peer.to_dict() for peer in self.engine.peers.values()],
        }
