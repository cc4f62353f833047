"""Cancellable periodic work on the asyncio loop."""

from __future__ import annotations

import asyncio
import inspect
import logging
from typing import Awaitable, Callable, List, Optional, Union

from portfolio_tracker.logging_config import structured_log_extra

logger = logging.getLogger(__name__)

Callback = Callable[[], Union[None, Awaitable[None]]]


class PeriodicTask:
    """
    Runs ``callback`` every ``interval`` seconds until cancelled.

    The first run happens one interval after :meth:`start` unless
    ``run_immediately`` is set. Errors raised by the callback are logged and
    the schedule continues.
    """

    def __init__(
        self,
        interval: float,
        callback: Callback,
        name: str,
        *,
        run_immediately: bool = False,
    ):
        if interval <= 0:
            raise ValueError("interval must be positive")
        self.interval = interval
        self.name = name
        self.runs = 0
        self._callback = callback
        self._run_immediately = run_immediately
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> "PeriodicTask":
        if self.running:
            logger.warning("Periodic task %s is already running.", self.name)
            return self
        self._task = asyncio.get_running_loop().create_task(self._loop(), name=self.name)
        return self

    def cancel(self) -> None:
        if self._task is not None and not self._task.done():
            self._task.cancel()

    async def stop(self) -> None:
        task = self._task
        self.cancel()
        if task is not None and task is not asyncio.current_task():
            try:
                await task
            except asyncio.CancelledError:
                pass

    async def run_once(self) -> None:
        self.runs += 1
        try:
            result = self._callback()
            if inspect.isawaitable(result):
                await result
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.error(
                "Periodic task %s failed: %s",
                self.name,
                exc,
                extra=structured_log_extra(event="periodic_task_failed", task=self.name),
            )

    async def _loop(self) -> None:
        if self._run_immediately:
            await self.run_once()
        while True:
            await asyncio.sleep(self.interval)
            await self.run_once()


class Scheduler:
    """Owns a set of :class:`PeriodicTask` handles so shutdown can stop them all."""

    def __init__(self) -> None:
        self._tasks: List[PeriodicTask] = []

    def every(
        self, interval: float, callback: Callback, name: str, *, run_immediately: bool = False
    ) -> PeriodicTask:
        task = PeriodicTask(interval, callback, name, run_immediately=run_immediately)
        self._tasks.append(task)
        return task.start()

    @property
    def tasks(self) -> List[PeriodicTask]:
        return list(self._tasks)

    async def shutdown(self) -> None:
        tasks, self._tasks = self._tasks, []
        for task in tasks:
            task.cancel()
        for task in tasks:
            await task.stop()
