"""
base.py — The capability contract every transport channel implements.

    await channel.connect()
    channel.on_message(callback)        # callback(alert, channel)
    channel.send(alert)                 # raises TransportUnavailable if down
    channel.state                       # disconnected / connecting / connected
    await channel.disconnect()

The propagation engine holds a set of channels and treats them uniformly.
``send`` never blocks: channels that talk to a socket schedule the write on
the event loop and return.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from enum import Enum
from typing import Any, Callable, List

from saferoute.app.mesh.models import Alert

logger = logging.getLogger(__name__)


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING   = "connecting"
    CONNECTED    = "connected"


MessageCallback = Callable[[Alert, "TransportChannel"], Any]
HistoryCallback = Callable[[List[Alert], "TransportChannel"], Any]


class TransportChannel(ABC):
    """A pluggable transport consumed by the propagation engine."""

    name: str = "channel"

    def __init__(self) -> None:
        self._state = ConnectionState.DISCONNECTED
        self._message_callbacks: List[MessageCallback] = []
        self._history_callbacks: List[HistoryCallback] = []

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def connected(self) -> bool:
        return self._state == ConnectionState.CONNECTED

    def _set_state(self, state: ConnectionState) -> None:
        if state != self._state:
            logger.info(
                "[%s] %s → %s", self.name, self._state.value, state.value,
                extra={"channel": self.name},
            )
            self._state = state

    @abstractmethod
    async def connect(self) -> None:
        """Start the channel. Must not raise on transport failure."""

    @abstractmethod
    async def disconnect(self) -> None:
        """Stop the channel and cancel any timers it owns."""

    @abstractmethod
    def send(self, alert: Alert) -> None:
        """
        Hand ``alert`` to the transport.

        Raises
        ------
        TransportUnavailable
            If the channel is not connected. Nothing is queued.
        """

    def on_message(self, callback: MessageCallback) -> None:
        self._message_callbacks.append(callback)

    def on_history(self, callback: HistoryCallback) -> None:
        self._history_callbacks.append(callback)

    def remove_callback(self, callback: Callable[..., Any]) -> None:
        for callbacks in (self._message_callbacks, self._history_callbacks):
            if callback in callbacks:
                callbacks.remove(callback)

    def _deliver(self, alert: Alert) -> None:
        for callback in list(self._message_callbacks):
            callback(alert, self)

    def _deliver_history(self, alerts: List[Alert]) -> None:
        for callback in list(self._history_callbacks):
            callback(alerts, self)

    def __repr__(self) -> str:
        return f"{type(self).__name__}(state={self._state.value})"
