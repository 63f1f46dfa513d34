"""
Periodic tasks with an explicit interval and cancellation handle.

Used for the shared-storage poll (every ~1 s) and the optional auto-flush.
The callback may be a plain function or a coroutine function; exceptions
are logged and the schedule keeps running.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from typing import Any, Awaitable, Callable, Optional, Union

logger = logging.getLogger(__name__)

TaskCallback = Callable[[], Union[None, Awaitable[Any]]]


class PeriodicTask:
    """Run ``callback`` every ``interval`` seconds until cancelled."""

    def __init__(self, interval: float, callback: TaskCallback, *, name: str = "periodic"):
        if interval <= 0:
            raise ValueError(f"interval must be positive, got {interval}")
        self.interval = interval
        self.name = name
        self._callback = callback
        self._task: Optional[asyncio.Task] = None
        self.runs = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        """Schedule on the running event loop. No-op if already running."""
        if self.running:
            return
        self._task = asyncio.get_running_loop().create_task(self._loop(), name=self.name)
        logger.debug("Periodic task %s started (every %.1fs)", self.name, self.interval)

    def cancel(self) -> None:
        """Stop future runs. Safe to call more than once."""
        if self._task is not None and not self._task.done():
            self._task.cancel()
            logger.debug("Periodic task %s cancelled", self.name)
        self._task = None

    async def _loop(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            try:
                result = self._callback()
                if inspect.isawaitable(result):
                    await result
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Periodic task %s failed", self.name)
            self.runs += 1
