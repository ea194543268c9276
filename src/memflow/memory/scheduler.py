"""Owned periodic background tasks."""

import asyncio
import inspect
from typing import Any, Awaitable, Callable, Optional

import structlog

logger = structlog.get_logger()


class PeriodicTask:
    """Run a coroutine function every ``interval`` seconds.

    Nothing runs until ``start()`` is called. ``cancel()`` is synchronous
    and only drops the timer: an iteration that already started keeps
    running until it completes or fails on its own.
    """

    def __init__(
        self,
        name: str,
        func: Callable[[], Awaitable[Any]],
        interval: float,
    ):
        if interval <= 0:
            raise ValueError("Interval must be positive")
        self.name = name
        self.func = func
        self.interval = interval
        self._task: Optional[asyncio.Task] = None
        self._running = False
        self._in_flight: set[asyncio.Task] = set()

    @property
    def running(self) -> bool:
        return self._running

    def start(self) -> None:
        """Start the loop on the running event loop."""
        if self._running:
            return
        self._running = True
        self._task = asyncio.get_running_loop().create_task(self._run_loop())
        logger.debug("Periodic task started", task=self.name, interval=self.interval)

    def cancel(self) -> None:
        """Clear the pending timer."""
        self._running = False
        if self._task is not None:
            self._task.cancel()
            self._task = None

    async def stop(self) -> None:
        """Cancel the timer and wait for any in-flight iteration."""
        task = self._task
        self.cancel()
        if task is not None:
            try:
                await task
            except asyncio.CancelledError:
                pass
        if self._in_flight:
            await asyncio.gather(*self._in_flight, return_exceptions=True)
        logger.debug("Periodic task stopped", task=self.name)

    async def _run_loop(self) -> None:
        while self._running:
            try:
                await asyncio.sleep(self.interval)
            except asyncio.CancelledError:
                break
            if not self._running:
                break
            # Shielded from cancel(): the iteration runs to completion.
            run = asyncio.ensure_future(self._run_once())
            self._in_flight.add(run)
            run.add_done_callback(self._in_flight.discard)
            try:
                await asyncio.shield(run)
            except asyncio.CancelledError:
                break

    async def _run_once(self) -> None:
        try:
            result = self.func()
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            logger.error("Periodic task failed", task=self.name, error=str(e))
