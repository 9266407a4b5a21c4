"""Coalesce bursts of filesystem events into a single trigger."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable

from orbit.cli.dev.logging import DevLogComponent, get_logger
from orbit.models import WatchEvent

FireCallback = Callable[[WatchEvent | None], Awaitable[None]]

logger = get_logger(DevLogComponent.WATCHER)


class Debouncer:
    """Last-write-wins debouncer on the running event loop.

    Every `notify` (re)arms a timer of `delay` seconds; when the timer elapses
    the callback runs once with the most recent event. Callback invocations
    are serialized: a fire that comes due while the previous callback is still
    running waits for it instead of overlapping.
    """

    def __init__(self, delay: float, callback: FireCallback | None = None) -> None:
        self.delay: float = delay
        self._callback: FireCallback | None = callback
        self._pending: WatchEvent | None = None
        self._armed: bool = False
        self._timer: asyncio.TimerHandle | None = None
        self._lock: asyncio.Lock = asyncio.Lock()
        self._tasks: set[asyncio.Task[None]] = set()

    def on_fire(self, callback: FireCallback) -> None:
        self._callback = callback

    @property
    def pending(self) -> bool:
        """True while a timer is armed and has not fired yet."""
        return self._armed

    def notify(self, event: WatchEvent | None = None) -> None:
        """Record `event` as the latest trigger and restart the timer."""
        loop = asyncio.get_running_loop()
        self._pending = event
        self._armed = True
        if self._timer is not None:
            self._timer.cancel()
        self._timer = loop.call_later(self.delay, self._fire)

    def cancel(self) -> None:
        """Drop the armed timer (in-flight callbacks are left to finish)."""
        if self._timer is not None:
            self._timer.cancel()
        self._timer = None
        self._pending = None
        self._armed = False

    async def aclose(self) -> None:
        """Cancel the timer and wait for in-flight callbacks."""
        self.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)

    def _fire(self) -> None:
        event = self._pending
        self._timer = None
        self._pending = None
        self._armed = False
        task = asyncio.get_running_loop().create_task(self._run(event))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _run(self, event: WatchEvent | None) -> None:
        async with self._lock:
            if self._callback is None:
                logger.debug("Debouncer fired with no callback registered")
                return
            try:
                await self._callback(event)
            except Exception as e:
                logger.error(f"Change handler failed: {e}")
