"""Outbound Queue - paced, bounded FIFO of pending sends.

Protects the Transport from bursts (many users at once, or one user
spamming the bot): sends go out one at a time, in submission order, with a
minimum delay between them. When the queue is full new sends are shed
immediately instead of growing memory.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from .broadcaster import EventBroadcaster
from .models import SentMessage

if TYPE_CHECKING:
    from .transport.base import Transport

logger = logging.getLogger(__name__)

DEFAULT_CAPACITY = 20
DEFAULT_MIN_DELAY = 0.1


@dataclass
class OutboundItem:
    """A send waiting in the queue."""

    conversation_id: str
    payload: dict[str, Any]
    options: dict[str, Any] | None
    future: asyncio.Future[SentMessage | None]
    enqueued_at: float = field(default_factory=lambda: asyncio.get_running_loop().time())


class OutboundQueue:
    """Bounded FIFO drained through the Transport by a single task.

    At most one Transport send is outstanding at any time. A failed send
    fails only its own future; draining continues with the next item after
    the usual delay.
    """

    def __init__(
        self,
        transport: Transport,
        capacity: int = DEFAULT_CAPACITY,
        min_delay: float = DEFAULT_MIN_DELAY,
        on_sent: EventBroadcaster[[str, dict[str, Any], dict[str, Any] | None]] | None = None,
    ) -> None:
        if capacity < 1:
            raise ValueError(f"capacity must be at least 1, got {capacity}")
        if min_delay < 0:
            raise ValueError(f"min_delay must be non-negative, got {min_delay}")

        self._transport = transport
        self._capacity = capacity
        self._min_delay = min_delay
        self.on_sent = on_sent if on_sent is not None else EventBroadcaster("message_sent")

        self._items: deque[OutboundItem] = deque()
        self._task: asyncio.Task[None] | None = None
        self._stopped = False
        self._last_sent_at: float | None = None

    def __len__(self) -> int:
        return len(self._items)

    @property
    def capacity(self) -> int:
        return self._capacity

    @property
    def min_delay(self) -> float:
        return self._min_delay

    @property
    def is_draining(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def is_stopped(self) -> bool:
        return self._stopped

    @property
    def last_sent_at(self) -> float | None:
        """Loop time at which the last Transport send completed."""
        return self._last_sent_at

    @property
    def pending(self) -> tuple[OutboundItem, ...]:
        """Snapshot of queued items, head first (the in-flight send excluded)."""
        return tuple(self._items)

    # -------------------------------------------------------------------------
    # Submission
    # -------------------------------------------------------------------------

    def enqueue(
        self,
        conversation_id: str,
        payload: dict[str, Any],
        options: dict[str, Any] | None = None,
    ) -> asyncio.Future[SentMessage | None]:
        """Queue a send and return its result future.

        The future resolves with the Transport's descriptor, fails with the
        Transport's exception, or resolves to None right away when the queue
        is full.
        """
        future: asyncio.Future[SentMessage | None] = asyncio.get_running_loop().create_future()

        if len(self._items) >= self._capacity:
            logger.debug(
                f"Outbound queue full ({self._capacity}), not sending to {conversation_id}"
            )
            future.set_result(None)
            return future

        self._items.append(OutboundItem(conversation_id, payload, options, future))
        self._ensure_draining()
        return future

    async def send(
        self,
        conversation_id: str,
        payload: dict[str, Any],
        options: dict[str, Any] | None = None,
    ) -> SentMessage | None:
        """Enqueue and wait for the outcome."""
        return await self.enqueue(conversation_id, payload, options)

    # -------------------------------------------------------------------------
    # Flow control
    # -------------------------------------------------------------------------

    def stop_gracefully(self) -> None:
        """Stop popping new items once the in-flight send completes.

        Queued items stay queued until resume().
        """
        self._stopped = True

    def resume(self) -> None:
        """Resume draining after stop_gracefully()."""
        self._stopped = False
        self._ensure_draining()

    async def join(self, timeout: float | None = None) -> bool:
        """Wait for the current drain loop, if any, to finish.

        Never cancels the drain loop. Returns False if it is still running
        after ``timeout`` seconds.
        """
        task = self._task
        if task is None or task.done():
            return True
        if task is asyncio.current_task():
            # Called from inside a send; waiting would deadlock
            return False
        done, _ = await asyncio.wait({task}, timeout=timeout)
        return task in done

    def detach_pending(self) -> list[OutboundItem]:
        """Remove and return every queued item, futures still unsettled."""
        items = list(self._items)
        self._items.clear()
        return items

    def discard_pending(self) -> int:
        """Drop every queued item, resolving its future to None (not sent).

        Returns:
            Number of items dropped
        """
        items = self.detach_pending()
        for item in items:
            if not item.future.done():
                item.future.set_result(None)
        return len(items)

    def adopt(
        self,
        items: Iterable[OutboundItem],
        last_sent_at: float | None = None,
    ) -> None:
        """Append items detached from another queue, preserving order.

        ``last_sent_at`` is the previous queue's last send time, so the first
        adopted send still honors the minimum delay. Items that do not fit
        are shed like any other overflow.
        """
        if last_sent_at is not None and (
            self._last_sent_at is None or last_sent_at > self._last_sent_at
        ):
            self._last_sent_at = last_sent_at
        for item in items:
            if item.future.done():
                continue
            if len(self._items) >= self._capacity:
                item.future.set_result(None)
                continue
            self._items.append(item)
        self._ensure_draining()

    # -------------------------------------------------------------------------
    # Drain loop
    # -------------------------------------------------------------------------

    def _ensure_draining(self) -> None:
        if self._stopped or self.is_draining or not self._items:
            return
        self._task = asyncio.create_task(self._drain())

    async def _drain(self) -> None:
        loop = asyncio.get_running_loop()
        while self._items and not self._stopped:
            if self._last_sent_at is not None:
                # Pace from the previous send, even one made by an earlier queue
                gap = self._last_sent_at + self._min_delay - loop.time()
                await asyncio.sleep(max(gap, 0))
                if self._stopped or not self._items:
                    break

            item = self._items.popleft()
            if item.future.done():
                # Caller gave up on it while queued
                continue

            try:
                result = await self._transport.send_message(
                    item.conversation_id, item.payload, item.options
                )
            except Exception as e:
                logger.warning(f"Send to {item.conversation_id} failed: {e}")
                if not item.future.done():
                    item.future.set_exception(e)
            else:
                if not item.future.done():
                    item.future.set_result(result)
                try:
                    self.on_sent.call_all(item.conversation_id, item.payload, item.options)
                except Exception:
                    logger.exception("Error in message_sent listener")
            finally:
                self._last_sent_at = loop.time()
