"""
Periodic Sweep

Timer loop shared by the background sweeps. Each sweep runs as its own
asyncio task and shares nothing in-process with the others; overlapping
runs are made safe by the stores and channel leases, not by this loop.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Any, Optional

logger = logging.getLogger(__name__)


class PeriodicSweep(ABC):
    """
    Runs run_once() every interval_seconds until stopped.

    stop() sets the stop event; run_once() implementations check it between
    items and return early, so an in-flight item is never cut off midway.
    """

    name = "sweep"

    def __init__(self, interval_seconds: float):
        self.interval_seconds = interval_seconds
        self._stop_event = asyncio.Event()
        self._task: Optional[asyncio.Task] = None

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self):
        """Start the loop."""
        if self.is_running:
            return

        self._stop_event.clear()
        self._task = asyncio.create_task(self._run(), name=self.name)
        logger.info(f"{self.name} started (interval={self.interval_seconds}s)")

    async def stop(self):
        """Stop after the item currently in flight."""
        self._stop_event.set()
        if self._task:
            await self._task
            self._task = None
        logger.info(f"{self.name} stopped")

    async def _run(self):
        """Main loop."""
        while not self._stop_event.is_set():
            try:
                await self.run_once(self._stop_event)
            except Exception as e:
                logger.error(f"{self.name} error: {e}", exc_info=True)

            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.interval_seconds)
            except asyncio.TimeoutError:
                pass

    @abstractmethod
    async def run_once(self, stop_event: Optional[asyncio.Event] = None) -> Any:
        """Run a single pass, returning early once stop_event is set."""
        ...
