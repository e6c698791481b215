"""A bounded multi-producer, single-consumer queue with async waiting.

Items are delivered in FIFO order. Once closed, no new items are accepted,
but anything already queued can still be drained.
"""

from __future__ import annotations

import asyncio
from collections import deque
from typing import Any, Deque, Generic, List, Optional, TypeVar

T = TypeVar("T")


class EnqueueError(Exception):
    """An item could not be enqueued; the rejected item is kept in ``item``."""

    def __init__(self, item: Any) -> None:
        super().__init__(item)
        self.item = item


class QueueFullError(EnqueueError):
    """The queue has no free slot for the item."""


class QueueClosedError(EnqueueError):
    """The queue has been closed and accepts no further items."""


class DequeueError(Exception):
    """The queue is closed and holds no more items."""


async def _park(waiters: List["asyncio.Future[None]"]) -> None:
    fut: asyncio.Future[None] = asyncio.get_running_loop().create_future()
    waiters.append(fut)
    try:
        await fut
    finally:
        if fut in waiters:
            waiters.remove(fut)


def _wake_all(waiters: List["asyncio.Future[None]"]) -> None:
    for fut in waiters:
        if not fut.done():
            fut.set_result(None)
    waiters.clear()


class MpScQueue(Generic[T]):
    """A bounded FIFO queue whose capacity must be a power of two."""

    def __init__(self, capacity: int) -> None:
        if capacity < 1 or capacity & (capacity - 1):
            raise ValueError(f"capacity must be a power of two, got {capacity}")
        self._capacity = capacity
        self._items: Deque[T] = deque()
        self._closed = False
        self._cons_waiters: List[asyncio.Future[None]] = []
        self._prod_waiters: List[asyncio.Future[None]] = []

    @property
    def capacity(self) -> int:
        return self._capacity

    @property
    def closed(self) -> bool:
        return self._closed

    def __len__(self) -> int:
        return len(self._items)

    def close(self) -> None:
        """Permanently close the queue; queued items remain retrievable."""
        self._closed = True
        _wake_all(self._cons_waiters)
        _wake_all(self._prod_waiters)

    def dequeue_sync(self) -> Optional[T]:
        """Return the item at the front of the queue, or ``None`` if it is empty."""
        if not self._items:
            return None
        item = self._items.popleft()
        _wake_all(self._prod_waiters)
        return item

    def enqueue_sync(self, item: T) -> None:
        """Add ``item`` to the back of the queue, raising if full or closed."""
        if self._closed:
            raise QueueClosedError(item)
        if len(self._items) >= self._capacity:
            raise QueueFullError(item)
        self._items.append(item)
        _wake_all(self._cons_waiters)

    async def enqueue_async(self, item: T) -> None:
        """Add ``item``, waiting for room; raises QueueClosedError if closed."""
        while True:
            try:
                self.enqueue_sync(item)
                return
            except QueueFullError:
                pass
            await _park(self._prod_waiters)

    async def dequeue_async(self) -> T:
        """Wait for and return the next item; raises DequeueError once closed and empty."""
        while not self._items:
            if self._closed:
                raise DequeueError("queue closed")
            await _park(self._cons_waiters)
        item = self._items.popleft()
        _wake_all(self._prod_waiters)
        return item