"""
sync.py — Reconciles locally queued alerts with the backend.

    result = await reconciler.flush(api_url, token)
    result.synced        # 0 on failure or when nothing was queued

A flush submits `pending` + `received` as one batch. Only a successful
acknowledgment removes alerts, and only the ones that were in the batch;
anything that arrived while the request was in flight stays queued.

There is no retry here. Callers re-invoke flush, either by hand or through
the optional auto-flush schedule (AUTO_FLUSH_INTERVAL, off by default).
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from saferoute.app.core.config import settings
from saferoute.app.core.errors import SyncFailure
from saferoute.app.mesh.channels.backend_sync import BackendSyncClient
from saferoute.app.mesh.engine import PropagationEngine
from saferoute.app.mesh.scheduling import PeriodicTask

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SyncResult:
    synced: int
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"synced": self.synced}
        if self.error:
            data["error"] = self.error
        return data


class SyncReconciler:
    """Manual (and optionally periodic) flush of the engine's queues."""

    def __init__(
        self,
        engine: PropagationEngine,
        client: Optional[BackendSyncClient] = None,
        *,
        auto_flush_interval: Optional[float] = None,
    ):
        self.engine = engine
        self.client = client or BackendSyncClient()
        self.auto_flush_interval = (
            settings.AUTO_FLUSH_INTERVAL if auto_flush_interval is None else auto_flush_interval
        )
        self._lock = asyncio.Lock()
        self._auto_flush: Optional[PeriodicTask] = None
        self.last_result: Optional[SyncResult] = None

    async def flush(
        self,
        api_endpoint: Optional[str] = None,
        auth_token: Optional[str] = None,
    ) -> SyncResult:
        """Submit every queued alert; clear them only on acknowledgment."""
        async with self._lock:
            batch = self.engine.queued_alerts()
            if not batch:
                result = SyncResult(synced=0)
            else:
                result = await self._submit(batch, api_endpoint, auth_token)
            self.last_result = result
            return result

    async def _submit(self, batch, api_endpoint, auth_token) -> SyncResult:
        try:
            await self.client.bulk_sync(
                [alert.to_dict() for alert in batch],
                api_url=api_endpoint,
                token=auth_token,
            )
        except SyncFailure as exc:
            logger.warning(
                "Flush of %d alerts failed: %s — queues kept", len(batch), exc.reason,
            )
            return SyncResult(synced=0, error=exc.reason)

        self.engine.clear_synced(alert.id for alert in batch)
        logger.info("Flushed %d alerts to backend", len(batch), extra={"synced": len(batch)})
        return SyncResult(synced=len(batch))

    def start_auto_flush(self) -> bool:
        """Start periodic flushing if AUTO_FLUSH_INTERVAL > 0."""
        if self.auto_flush_interval <= 0:
            return False
        if self._auto_flush is None:
            self._auto_flush = PeriodicTask(
                self.auto_flush_interval, self.flush, name="auto-flush",
            )
        self._auto_flush.start()
        logger.info("Auto-flush every %.0fs", self.auto_flush_interval)
        return True

    def stop_auto_flush(self) -> None:
        if self._auto_flush is not None:
            self._auto_flush.cancel()
            self._auto_flush = None

    async def close(self) -> None:
        self.stop_auto_flush()
        await self.client.close()
