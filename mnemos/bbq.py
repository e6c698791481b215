"""Async byte queues built on a bipartite circular buffer.

Writers ask for a contiguous write grant, fill it and commit some of it;
readers ask for a contiguous read grant and release what they consumed.
Waiting readers are woken by commits, waiting writers by releases.
"""

from __future__ import annotations

import asyncio
import copy
from typing import List, Optional, Tuple, Union


class _BipBuffer:
    """The ring state: contiguous grants with a wrap-around watermark."""

    def __init__(self, capacity: int) -> None:
        if capacity < 1:
            raise ValueError(f"capacity must be positive, got {capacity}")
        self.buf = bytearray(capacity)
        self.capacity = capacity
        self.write = 0
        self.read = 0
        self.last = 0
        self.reserve = 0
        self.write_in_progress = False
        self.read_in_progress = False

    def grant_exact(self, size: int) -> Optional[Tuple[int, int]]:
        if self.write_in_progress:
            return None
        write, read, cap = self.write, self.read, self.capacity
        if write < read:
            if write + size < read:
                start = write
            else:
                return None
        elif write + size <= cap:
            start = write
        elif size < read:
            start = 0
        else:
            return None
        self.write_in_progress = True
        self.reserve = start + size
        return start, size

    def grant_max_remaining(self, max_len: int) -> Optional[Tuple[int, int]]:
        if self.write_in_progress:
            return None
        write, read, cap = self.write, self.read, self.capacity
        if write < read:
            remain = read - write - 1
            if remain == 0:
                return None
            start, size = write, min(remain, max_len)
        elif write != cap:
            start, size = write, min(cap - write, max_len)
        elif read > 1:
            start, size = 0, min(read - 1, max_len)
        else:
            return None
        self.write_in_progress = True
        self.reserve = start + size
        return start, size

    def commit(self, length: int, used: int) -> None:
        used = min(length, used)
        write = self.write
        self.reserve -= length - used
        new_write = self.reserve
        if new_write < write and write != self.capacity:
            self.last = write
        elif new_write > self.last:
            self.last = self.capacity
        self.write = new_write
        self.write_in_progress = False

    def read_region(self) -> Optional[Tuple[int, int]]:
        if self.read_in_progress:
            return None
        write, last, read = self.write, self.last, self.read
        if read == last and write < read:
            read = 0
            self.read = 0
        size = (last if write < read else write) - read
        if size == 0:
            return None
        self.read_in_progress = True
        return read, size

    def release(self, length: int, used: int) -> None:
        self.read += min(length, used)
        self.read_in_progress = False


class _WaitCell:
    def __init__(self) -> None:
        self._waiters: List[asyncio.Future[None]] = []

    def wake(self) -> None:
        for fut in self._waiters:
            if not fut.done():
                fut.set_result(None)
        self._waiters.clear()

    async def wait(self) -> None:
        fut: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        self._waiters.append(fut)
        try:
            await fut
        finally:
            if fut in self._waiters:
                self._waiters.remove(fut)


class _Storage:
    def __init__(self, capacity: int) -> None:
        self.ring = _BipBuffer(capacity)
        self.commit_wait = _WaitCell()
        self.release_wait = _WaitCell()
        self.producer_lock = asyncio.Lock()


class _Grant:
    def __init__(self, storage: _Storage, start: int, length: int) -> None:
        self._storage = storage
        self._length = length
        self._view = memoryview(storage.ring.buf)[start : start + length]
        self._done = False

    def __len__(self) -> int:
        return self._length

    def __getitem__(self, key: Union[int, slice]) -> Union[int, bytes]:
        self._check()
        if isinstance(key, slice):
            return bytes(self._view[key])
        return self._view[key]

    def __setitem__(self, key: Union[int, slice], value) -> None:
        self._check()
        self._view[key] = value

    def __bytes__(self) -> bytes:
        self._check()
        return bytes(self._view)

    def _check(self) -> None:
        if self._done:
            raise RuntimeError("grant already finished")

    def _finish(self, used: int) -> int:
        self._check()
        if used < 0:
            raise ValueError("used must not be negative")
        self._done = True
        self._view.release()
        return used


class GrantW(_Grant):
    """A contiguous region of the queue reserved for writing."""

    def commit(self, used: int) -> None:
        """Make the first ``used`` bytes visible to the reader."""
        used = self._finish(used)
        self._storage.ring.commit(self._length, used)
        if used != 0:
            self._storage.commit_wait.wake()

    def __enter__(self) -> "GrantW":
        return self

    def __exit__(self, *args: object) -> None:
        if not self._done:
            self.commit(0)


class GrantR(_Grant):
    """A contiguous region of committed bytes available for reading."""

    def release(self, used: int) -> None:
        """Free the first ``used`` bytes for the writer to reuse."""
        used = self._finish(used)
        self._storage.ring.release(self._length, used)
        if used != 0:
            self._storage.release_wait.wake()

    def __enter__(self) -> "GrantR":
        return self

    def __exit__(self, *args: object) -> None:
        if not self._done:
            self.release(0)


def _try_grant_max(storage: _Storage, max_len: int) -> Optional[GrantW]:
    region = storage.ring.grant_max_remaining(max_len)
    return None if region is None else GrantW(storage, *region)


def _try_grant_exact(storage: _Storage, size: int) -> Optional[GrantW]:
    region = storage.ring.grant_exact(size)
    return None if region is None else GrantW(storage, *region)


async def _send_grant_max(storage: _Storage, max_len: int) -> GrantW:
    while True:
        grant = _try_grant_max(storage, max_len)
        if grant is not None:
            return grant
        await storage.release_wait.wait()


async def _send_grant_exact(storage: _Storage, size: int) -> GrantW:
    if size > storage.ring.capacity:
        raise ValueError(
            f"grant of {size} bytes exceeds queue capacity {storage.ring.capacity}"
        )
    while True:
        grant = _try_grant_exact(storage, size)
        if grant is not None:
            return grant
        await storage.release_wait.wait()


class SpscProducer:
    """The single writer of a queue."""

    def __init__(self, storage: _Storage) -> None:
        self._storage: Optional[_Storage] = storage

    def _live(self) -> _Storage:
        if self._storage is None:
            raise RuntimeError("producer was converted into an MpscProducer")
        return self._storage

    def into_mpsc_producer(self) -> "MpscProducer":
        """Turn this producer into one that can be shared by many writers."""
        storage = self._live()
        self._storage = None
        return MpscProducer(storage)

    async def send_grant_max(self, max_len: int) -> GrantW:
        """Wait for a write grant of between 1 and ``max_len`` bytes."""
        return await _send_grant_max(self._live(), max_len)

    async def send_grant_exact(self, size: int) -> GrantW:
        """Wait for a write grant of exactly ``size`` bytes."""
        return await _send_grant_exact(self._live(), size)

    def send_grant_max_sync(self, max_len: int) -> Optional[GrantW]:
        """Return a write grant of up to ``max_len`` bytes, or ``None``."""
        return _try_grant_max(self._live(), max_len)

    def send_grant_exact_sync(self, size: int) -> Optional[GrantW]:
        """Return a write grant of exactly ``size`` bytes, or ``None``."""
        return _try_grant_exact(self._live(), size)


class MpscProducer:
    """A shareable writer; grant requests are serialised by a lock."""

    def __init__(self, storage: _Storage) -> None:
        self._storage = storage

    def __copy__(self) -> "MpscProducer":
        return MpscProducer(self._storage)

    def clone(self) -> "MpscProducer":
        return copy.copy(self)

    async def send_grant_max(self, max_len: int) -> GrantW:
        """Wait for a write grant of between 1 and ``max_len`` bytes."""
        async with self._storage.producer_lock:
            return await _send_grant_max(self._storage, max_len)

    async def send_grant_exact(self, size: int) -> GrantW:
        """Wait for a write grant of exactly ``size`` bytes."""
        async with self._storage.producer_lock:
            return await _send_grant_exact(self._storage, size)


class Consumer:
    """The single reader of a queue."""

    def __init__(self, storage: _Storage) -> None:
        self._storage = storage

    async def read_grant(self) -> GrantR:
        """Wait until committed bytes are available and grant them."""
        while True:
            grant = self.read_grant_sync()
            if grant is not None:
                return grant
            await self._storage.commit_wait.wait()

    def read_grant_sync(self) -> Optional[GrantR]:
        """Grant the available committed bytes, or return ``None``."""
        region = self._storage.ring.read_region()
        return None if region is None else GrantR(self._storage, *region)


class BidiHandle:
    """One end of a two-way link: a producer and the opposite consumer."""

    def __init__(self, producer: SpscProducer, consumer: Consumer) -> None:
        self._producer = producer
        self._consumer = consumer

    @property
    def producer(self) -> SpscProducer:
        return self._producer

    @property
    def consumer(self) -> Consumer:
        return self._consumer

    def split(self) -> Tuple[SpscProducer, Consumer]:
        """Return the producer and consumer of this end."""
        return self._producer, self._consumer


def new_spsc_channel(capacity: int) -> Tuple[SpscProducer, Consumer]:
    """Create a queue of ``capacity`` bytes and return its writer and reader."""
    storage = _Storage(capacity)
    return SpscProducer(storage), Consumer(storage)


def new_bidi_channel(capacity_a: int, capacity_b: int) -> Tuple[BidiHandle, BidiHandle]:
    """Create two linked ends; ``a`` writes into a queue of ``capacity_a`` bytes."""
    a_prod, a_cons = new_spsc_channel(capacity_a)
    b_prod, b_cons = new_spsc_channel(capacity_b)
    return BidiHandle(a_prod, b_cons), BidiHandle(b_prod, a_cons)