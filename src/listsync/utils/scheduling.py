from __future__ import annotations

import asyncio
import logging
import typing as t

_logger = logging.getLogger(__name__)


class PeriodicTask:
    """Runs an async callable every `interval_seconds` on the running loop.

    `stop()` waits for an in-flight run to finish instead of cancelling it.
    Exceptions raised by the callable are logged and the loop keeps going.
    """

    def __init__(
        self,
        name: str,
        interval_seconds: float,
        fn: t.Callable[[], t.Awaitable[t.Any]],
    ) -> None:
        self.name = name
        self._interval = interval_seconds
        self._fn = fn
        self._task: t.Optional[asyncio.Task] = None
        self._stop: t.Optional[asyncio.Event] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._stop = asyncio.Event()
        self._task = asyncio.get_running_loop().create_task(self._loop(), name=self.name)
        _logger.debug("Periodic task %s started (every %ss)", self.name, self._interval)

    async def stop(self) -> None:
        if self._task is None or self._stop is None:
            return
        self._stop.set()
        try:
            await self._task
        finally:
            self._task = None
            _logger.debug("Periodic task %s stopped", self.name)

    async def _loop(self) -> None:
        assert self._stop is not None
        while not self._stop.is_set():
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=self._interval)
                break
            except asyncio.TimeoutError:
                pass
            try:
                await self._fn()
            except Exception:  # noqa: BLE001 - a failed run must not kill the loop
                _logger.exception("Periodic task %s failed", self.name)
