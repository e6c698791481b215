"""Kernel channels: bounded async MPSC queues split into producer and consumer."""

from __future__ import annotations

from typing import Generic, Optional, Tuple, TypeVar

from mnemos.spitebuf import MpScQueue

T = TypeVar("T")


class KProducer(Generic[T]):
    """The sending side of a KChannel; may be shared by many senders."""

    def __init__(self, queue: MpScQueue[T]) -> None:
        self._queue = queue

    def enqueue_sync(self, item: T) -> None:
        """Add ``item`` now, raising QueueFullError or QueueClosedError."""
        self._queue.enqueue_sync(item)

    async def enqueue_async(self, item: T) -> None:
        """Add ``item``, waiting for space if the channel is full."""
        await self._queue.enqueue_async(item)


class KConsumer(Generic[T]):
    """The single receiving side of a KChannel."""

    def __init__(self, queue: MpScQueue[T]) -> None:
        self._queue = queue

    def dequeue_sync(self) -> Optional[T]:
        """Return the front item now, or ``None`` if the channel is empty."""
        return self._queue.dequeue_sync()

    async def dequeue_async(self) -> T:
        """Wait for the next item; raises DequeueError once closed and drained."""
        return await self._queue.dequeue_async()

    def producer(self) -> KProducer[T]:
        """Create a producer feeding this consumer's channel."""
        return KProducer(self._queue)


class KChannel(Generic[T]):
    """A bounded channel with room for ``capacity`` items (a power of two)."""

    def __init__(self, capacity: int) -> None:
        self._queue: MpScQueue[T] = MpScQueue(capacity)

    @property
    def queue(self) -> MpScQueue[T]:
        return self._queue

    def split(self) -> Tuple[KProducer[T], KConsumer[T]]:
        """Return a producer and the consumer of this channel."""
        return KProducer(self._queue), KConsumer(self._queue)

    def into_consumer(self) -> KConsumer[T]:
        """Return only the consumer; producers can be made from it later."""
        return KConsumer(self._queue)

    def close(self) -> None:
        """Close the channel to further sends."""
        self._queue.close()