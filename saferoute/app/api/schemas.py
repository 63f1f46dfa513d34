"""
Pydantic schemas for the relay hub wire protocol and HTTP surface.

Separated from the route handler so the hub core, the router and the
tests validate frames the same way.
"""

from __future__ import annotations

from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


# ---------------------------------------------------------------------------
# Alert payload
# ---------------------------------------------------------------------------

class LocationPayload(BaseModel):
    lat: float = Field(..., ge=-90.0, le=90.0, examples=[13.06])
    lng: float = Field(..., ge=-180.0, le=180.0, examples=[80.25])


class SOSPayload(BaseModel):
    """
    An alert as it travels between devices.

    Unknown keys (originDevice, priority, hopCount, ...) are kept: the hub
    forwards the payload exactly as it received it.
    """
    model_config = ConfigDict(extra="allow")

    id: str = Field(..., min_length=1, examples=["sos-1718000000000-SR-AB12CD-x9k2"])
    senderId: str = Field(..., min_length=1, examples=["SR-AB12CD"])
    timestamp: float = Field(..., description="Epoch milliseconds")
    location: Optional[LocationPayload] = None
    message: Optional[str] = None


# ---------------------------------------------------------------------------
# Frames
# ---------------------------------------------------------------------------

class SOSEnvelope(BaseModel):
    """Client → hub."""
    type: Literal["SOS"]
    data: SOSPayload


class SOSBroadcastEnvelope(BaseModel):
    """Hub → every other client."""
    type: Literal["SOS_BROADCAST"] = "SOS_BROADCAST"
    data: SOSPayload


class SOSHistoryEnvelope(BaseModel):
    """Hub → newly connected client, only when history is non-empty."""
    type: Literal["SOS_HISTORY"] = "SOS_HISTORY"
    messages: List[SOSPayload]


# ---------------------------------------------------------------------------
# HTTP responses
# ---------------------------------------------------------------------------

class HealthResponse(BaseModel):
    status: str = Field("ok", examples=["ok"])
    clients: int = Field(..., ge=0, description="Connected WebSocket clients")
    sos_count: int = Field(..., ge=0, description="SOS alerts added to history since start")
