"""Typed publish/subscribe channels for streamer notifications."""

from __future__ import annotations

import asyncio
import inspect
import logging
from typing import Callable, Generic, List, Set, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class ListenerHandle:
    """Returned by :meth:`EventChannel.subscribe`; call :meth:`cancel` to detach."""

    def __init__(self, channel: "EventChannel", listener: Callable) -> None:
        self._channel = channel
        self._listener = listener

    def cancel(self) -> None:
        self._channel._remove(self._listener)


class EventChannel(Generic[T]):
    """
    Delivers each emitted event to every registered listener in registration
    order. Listeners may be plain callables or coroutine functions; coroutine
    results are scheduled on the running loop. A failing listener is logged
    and does not stop delivery to the others.
    """

    def __init__(self, name: str) -> None:
        self.name = name
        self._listeners: List[Callable[[T], object]] = []
        self._pending: Set[asyncio.Task] = set()

    def subscribe(self, listener: Callable[[T], object]) -> ListenerHandle:
        self._listeners.append(listener)
        return ListenerHandle(self, listener)

    def _remove(self, listener: Callable) -> None:
        try:
            self._listeners.remove(listener)
        except ValueError:
            pass

    def __len__(self) -> int:
        return len(self._listeners)

    def emit(self, event: T) -> None:
        for listener in list(self._listeners):
            try:
                result = listener(event)
            except Exception:
                logger.exception(
                    "Listener on %s failed",
                    self.name,
                    extra={"event": "listener_failed", "channel": self.name},
                )
                continue

            if inspect.isawaitable(result):
                task = asyncio.ensure_future(result)
                self._pending.add(task)
                task.add_done_callback(self._on_task_done)

    def _on_task_done(self, task: asyncio.Task) -> None:
        self._pending.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(
                "Async listener on %s failed: %s",
                self.name,
                exc,
                extra={"event": "listener_failed", "channel": self.name},
            )
