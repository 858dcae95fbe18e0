"""
Cancelable single-shot debounce timer for asyncio.

Each trigger() cancels the pending fire and re-arms it. When the timer fires
it runs the callback; fires that arrive while a run is still in progress wait
for it, so at most one run is active at a time.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable

logger = logging.getLogger(__name__)


class DebounceTimer:
    """Debounced, single-flight runner for an async callback."""

    def __init__(self, delay_ms: int, callback: Callable[[], Awaitable[None]]):
        self.delay = max(0, delay_ms) / 1000
        self._callback = callback
        self._handle: asyncio.TimerHandle | None = None
        self._lock = asyncio.Lock()
        self._tasks: set[asyncio.Task] = set()

    @property
    def pending(self) -> bool:
        """True while a fire is scheduled but has not started."""
        return self._handle is not None

    @property
    def running(self) -> bool:
        return self._lock.locked()

    def trigger(self) -> None:
        """Re-arm the timer. Must be called from the event loop thread."""
        loop = asyncio.get_running_loop()
        if self._handle is not None:
            self._handle.cancel()
        self._handle = loop.call_later(self.delay, self._fire)

    def cancel(self) -> None:
        """Drop a scheduled fire. A run already in progress is not interrupted."""
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None

    def _fire(self) -> None:
        self._handle = None
        task = asyncio.get_running_loop().create_task(self._run())
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _run(self) -> None:
        async with self._lock:
            try:
                await self._callback()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Debounced callback failed: {e}")

    async def flush(self) -> None:
        """Run the callback now, cancelling any scheduled fire."""
        self.cancel()
        await self._run()

    async def wait(self) -> None:
        """Wait until no fire is scheduled and no run is in progress."""
        while self._handle is not None or self._tasks:
            if self._tasks:
                await asyncio.gather(*list(self._tasks), return_exceptions=True)
            else:
                await asyncio.sleep(self.delay / 2 or 0.001)

    async def close(self) -> None:
        """Cancel pending and in-flight runs."""
        self.cancel()
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
