"""
FastAPI routes: relay hub WebSocket and HTTP surface.

Provides:
    WS   /        — device socket (SOS in, SOS_BROADCAST / SOS_HISTORY out)
    GET  /health  — {"status": "ok", "clients": n, "sos_count": n}
    GET  /sos     — relay history, oldest first

No authentication: any device on the network segment may connect.
"""

from __future__ import annotations

from typing import Any, Dict, List

from fastapi import APIRouter, Request, WebSocket, WebSocketDisconnect

from saferoute.app.api.schemas import HealthResponse
from saferoute.app.core.logging_config import get_logger
from saferoute.app.relay.hub import RelayHub

logger = get_logger(__name__)

router = APIRouter(tags=["relay-hub"])


def _hub(app: Any) -> RelayHub:
    return app.state.hub


@router.websocket("/")
async def relay_socket(websocket: WebSocket):
    hub = _hub(websocket.app)
    await websocket.accept()
    await hub.register(websocket)
    try:
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                break
            raw = message.get("text")
            if raw is None and message.get("bytes") is not None:
                raw = message["bytes"].decode("utf-8", errors="replace")
            await hub.handle_message(websocket, raw)
    except WebSocketDisconnect as exc:
        logger.debug("Socket closed (code %s)", exc.code)
    finally:
        hub.unregister(websocket)


@router.get("/health", response_model=HealthResponse)
async def health(request: Request):
    """Liveness plus relay counters."""
    return _hub(request.app).status()


@router.get("/sos")
async def sos_history(request: Request) -> List[Dict[str, Any]]:
    return _hub(request.app).history
