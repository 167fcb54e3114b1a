from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Callable
from typing import Any

logger = logging.getLogger(__name__)


class DelayedTaskQueue:
    """Named one-shot and repeating timers on the running event loop.

    Scheduling a key that is already pending replaces the earlier timer.
    Callbacks may be plain functions or coroutine functions.
    """

    def __init__(self) -> None:
        self._handles: dict[str, asyncio.TimerHandle] = {}
        self._running: set[asyncio.Task[Any]] = set()

    def schedule(self, key: str, delay: float, callback: Callable[[], Any]) -> None:
        self.cancel(key)
        loop = asyncio.get_running_loop()
        self._handles[key] = loop.call_later(max(0.0, delay), self._fire, key, callback)

    def every(self, key: str, interval: float, callback: Callable[[], Any]) -> None:
        def _tick() -> Any:
            self.every(key, interval, callback)
            return callback()

        self.schedule(key, interval, _tick)

    def cancel(self, key: str) -> bool:
        handle = self._handles.pop(key, None)
        if handle is None:
            return False
        handle.cancel()
        return True

    def cancel_prefix(self, prefix: str) -> int:
        keys = [key for key in self._handles if key.startswith(prefix)]
        for key in keys:
            self.cancel(key)
        return len(keys)

    def cancel_all(self) -> None:
        for key in list(self._handles):
            self.cancel(key)

    async def drain(self) -> None:
        """Wait for callbacks that were already fired and are still running."""
        while self._running:
            await asyncio.gather(*list(self._running), return_exceptions=True)

    def _fire(self, key: str, callback: Callable[[], Any]) -> None:
        self._handles.pop(key, None)
        try:
            result = callback()
        except Exception:
            logger.exception("Scheduled callback %s failed", key)
            return
        if inspect.isawaitable(result):
            task = asyncio.ensure_future(result)
            self._running.add(task)
            task.add_done_callback(self._finished)

    def _finished(self, task: asyncio.Task[Any]) -> None:
        self._running.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Scheduled coroutine failed", exc_info=task.exception())
