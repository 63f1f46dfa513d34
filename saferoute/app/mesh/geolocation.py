"""
Geolocation capability.

Position acquisition itself is an external collaborator (GPS daemon,
browser bridge, manual entry). This module only defines the contract and
the bounded wait the SOS flow applies to it:

    location = await acquire_location(provider, timeout=3.0)
    engine.send_alert(location, message)     # location may be None

A provider signals failure by raising ``LocationUnavailable``; a provider
that does not answer in time is treated the same way. Either way the
alert still goes out, just without a location.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Optional, Protocol

from saferoute.app.core.config import settings
from saferoute.app.core.errors import LocationUnavailable
from saferoute.app.mesh.models import Location

logger = logging.getLogger(__name__)


class LocationProvider(Protocol):
    async def get_current_position(self) -> Location:
        """Return the current position or raise LocationUnavailable."""
        ...


class StaticLocationProvider:
    """Fixed position, e.g. from DEFAULT_LATITUDE / DEFAULT_LONGITUDE."""

    def __init__(self, location: Optional[Location] = None):
        self.location = location

    @classmethod
    def from_settings(cls) -> "StaticLocationProvider":
        if settings.DEFAULT_LATITUDE is None or settings.DEFAULT_LONGITUDE is None:
            return cls(None)
        return cls(Location(settings.DEFAULT_LATITUDE, settings.DEFAULT_LONGITUDE))

    async def get_current_position(self) -> Location:
        if self.location is None:
            raise LocationUnavailable("no position configured")
        return self.location


async def acquire_location(
    provider: Optional[LocationProvider],
    timeout: Optional[float] = None,
) -> Optional[Location]:
    """
    Ask ``provider`` for a position, giving up after ``timeout`` seconds.

    Returns
    -------
    Location | None
        None when there is no provider, it failed, or it timed out.
    """
    if provider is None:
        return None

    timeout = settings.GEOLOCATION_TIMEOUT if timeout is None else timeout
    try:
        return await asyncio.wait_for(provider.get_current_position(), timeout=timeout)
    except asyncio.TimeoutError:
        logger.warning("Geolocation timed out after %.1fs — sending without location", timeout)
    except LocationUnavailable as exc:
        logger.warning("%s — sending without location", exc.message)
    return None
