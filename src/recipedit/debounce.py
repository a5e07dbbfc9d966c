"""Debouncer: keyed trailing-edge debouncing on asyncio tasks."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Hashable
from typing import Generic, TypeVar

logger = logging.getLogger(__name__)

K = TypeVar("K", bound=Hashable)


class Debouncer(Generic[K]):
    """Run ``callback(key)`` once per key after ``delay`` seconds without a new trigger.

    Triggers within the window restart it, so a burst coalesces into a single
    call. A callback that is already running is never cancelled. Callback
    failures are logged and never propagate into the event loop.
    """

    def __init__(self, delay: float, callback: Callable[[K], Awaitable[None]], *, name: str = "debouncer") -> None:
        """Initialize with the quiescence window in seconds and the async callback."""
        self._delay = delay
        self._callback = callback
        self._name = name
        self._timers: dict[K, asyncio.Task[None]] = {}
        self._running: set[asyncio.Task[None]] = set()

    @property
    def delay(self) -> float:
        """Quiescence window in seconds."""
        return self._delay

    @property
    def pending(self) -> frozenset[K]:
        """Keys whose callback is scheduled but not started."""
        return frozenset(self._timers)

    @property
    def busy(self) -> bool:
        """Whether any callback is scheduled or running."""
        return bool(self._timers or self._running)

    def trigger(self, key: K) -> None:
        """(Re)start the window for ``key``. Requires a running event loop."""
        previous = self._timers.pop(key, None)
        if previous is not None:
            previous.cancel()
        self._timers[key] = asyncio.get_running_loop().create_task(self._fire(key))

    async def _fire(self, key: K) -> None:
        await asyncio.sleep(self._delay)
        task = asyncio.current_task()
        if self._timers.get(key) is task:
            del self._timers[key]
        if task is not None:
            self._running.add(task)
        try:
            await self._invoke(key)
        finally:
            self._running.discard(task)  # type: ignore[arg-type]

    async def _invoke(self, key: K) -> None:
        try:
            await self._callback(key)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("%s callback failed for %r", self._name, key)

    def cancel(self, key: K | None = None) -> None:
        """Drop the pending call for ``key`` (or for every key)."""
        keys = list(self._timers) if key is None else [key]
        for each in keys:
            timer = self._timers.pop(each, None)
            if timer is not None:
                timer.cancel()

    async def flush(self, key: K | None = None) -> None:
        """Run pending calls for ``key`` (or for every key) now instead of waiting."""
        keys = list(self._timers) if key is None else [key]
        for each in keys:
            timer = self._timers.pop(each, None)
            if timer is None:
                continue
            timer.cancel()
            await self._invoke(each)

    async def drain(self) -> None:
        """Wait until no call is scheduled or running."""
        while self._timers or self._running:
            await asyncio.gather(*self._timers.values(), *self._running, return_exceptions=True)
