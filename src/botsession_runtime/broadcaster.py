"""Event Broadcaster - typed multicast to an ordered list of listeners.

Each broadcaster owns its own listener list; there is no global registry.
Broadcasts are synchronous and run listeners in subscription order.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Callable
from typing import Any, Generic, ParamSpec

logger = logging.getLogger(__name__)

P = ParamSpec("P")


class EventBroadcaster(Generic[P]):
    """Multicast registry for one event kind.

    Usage:
        on_message: EventBroadcaster[[InboundMessage]] = EventBroadcaster("message")
        on_message.subscribe(handler)
        on_message.call_all(message)

    Listeners may be plain functions or ``async def`` functions. Coroutines
    returned by async listeners are scheduled on the running loop; the
    broadcast itself never awaits.

    A listener that raises is not caught here: the exception propagates to
    the caller of ``call_all`` and later listeners do not run.
    """

    def __init__(self, name: str = "event") -> None:
        self.name = name
        self._listeners: list[Callable[P, Any]] = []
        self._tasks: set[asyncio.Task[Any]] = set()

    def __len__(self) -> int:
        return len(self._listeners)

    def __contains__(self, listener: object) -> bool:
        return listener in self._listeners

    def __repr__(self) -> str:
        return f"EventBroadcaster({self.name!r}, listeners={len(self._listeners)})"

    @property
    def listeners(self) -> tuple[Callable[P, Any], ...]:
        """Snapshot of the current listeners, in call order."""
        return tuple(self._listeners)

    def subscribe(self, listener: Callable[P, Any]) -> None:
        """Register a listener at the end of the call order."""
        self._listeners.append(listener)

    def unsubscribe(self, listener: Callable[P, Any]) -> bool:
        """Remove the first listener equal to ``listener``.

        Returns:
            True if a listener was removed, False if none matched
        """
        for index, existing in enumerate(self._listeners):
            if existing == listener:
                del self._listeners[index]
                return True
        return False

    def call_all(self, *args: P.args, **kwargs: P.kwargs) -> None:
        """Invoke every listener with the same arguments.

        Iterates over a snapshot: listeners added or removed during the
        broadcast take effect on the next one.
        """
        for listener in list(self._listeners):
            result = listener(*args, **kwargs)
            if inspect.isawaitable(result):
                self._schedule(result)

    def clear(self) -> None:
        """Remove all listeners."""
        self._listeners.clear()

    def _schedule(self, awaitable: Any) -> None:
        task = asyncio.ensure_future(awaitable)
        self._tasks.add(task)
        task.add_done_callback(self._on_task_done)

    def _on_task_done(self, task: asyncio.Task[Any]) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(
                f"Async listener for '{self.name}' failed",
                exc_info=(type(exc), exc, exc.__traceback__),
            )
