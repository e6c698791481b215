"""Reusable one-shot channels for a single in-flight request/response cycle.

A ``Reusable`` hands out at most one live ``Sender`` at a time. The sender
delivers exactly one reply, which the ``Reusable`` then receives. After that
a new sender can be created.
"""

from __future__ import annotations

import asyncio
import enum
from typing import Any, Generic, List, Optional, TypeVar

T = TypeVar("T")


class ReusableError(Exception):
    """Base class for errors of the reusable one-shot channel."""


class SenderAlreadyActiveError(ReusableError):
    """A sender is live, or its reply has not been received yet."""


class NoSenderActiveError(ReusableError):
    """No sender exists, or the last one was dropped without replying."""


class ChannelClosedError(ReusableError):
    """The receiving side has been closed."""


class InternalError(ReusableError):
    """The channel is in a state that does not allow the operation."""


class _State(enum.Enum):
    IDLE = 0
    WAITING = 1
    WRITING = 2
    READY = 3
    READING = 4
    CLOSED = 5


class _Inner:
    """State shared between a Reusable and the senders it creates."""

    def __init__(self) -> None:
        self.state = _State.IDLE
        self.value: Any = None
        self._waiters: List[asyncio.Future[None]] = []
        self._closed = False

    def wake(self) -> None:
        for fut in self._waiters:
            if not fut.done():
                fut.set_result(None)
        self._waiters.clear()

    def close(self) -> None:
        self._closed = True
        self.wake()

    async def wait(self) -> None:
        if self._closed:
            raise ChannelClosedError("channel closed")
        fut: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        self._waiters.append(fut)
        try:
            await fut
        finally:
            if fut in self._waiters:
                self._waiters.remove(fut)
        if self._closed:
            raise ChannelClosedError("channel closed")


class Sender(Generic[T]):
    """A single-use handle that delivers one reply to its Reusable."""

    def __init__(self, inner: _Inner) -> None:
        self._inner = inner
        self._used = False

    def send(self, item: T) -> None:
        """Deliver ``item``; the sender cannot be used again afterwards."""
        if self._used:
            raise InternalError("sender already used")
        self._used = True
        inner = self._inner
        try:
            if inner.state is _State.CLOSED:
                raise ChannelClosedError("channel closed")
            if inner.state is not _State.WAITING:
                raise InternalError(f"unexpected channel state {inner.state.name}")
            inner.state = _State.WRITING
            inner.value = item
            inner.state = _State.READY
        finally:
            inner.wake()

    def discard(self) -> None:
        """Give up without replying; a waiting receiver sees no active sender."""
        if self._used:
            return
        self._used = True
        if self._inner.state is _State.WAITING:
            self._inner.state = _State.IDLE
        self._inner.wake()

    def __enter__(self) -> "Sender[T]":
        return self

    def __exit__(self, *args: object) -> None:
        self.discard()


class Reusable(Generic[T]):
    """A single-consumer channel of depth one that can be reused many times."""

    def __init__(self) -> None:
        self._inner = _Inner()

    def sender(self) -> Sender[T]:
        """Create the one sender for the next reply."""
        state = self._inner.state
        if state is _State.IDLE:
            self._inner.state = _State.WAITING
            return Sender(self._inner)
        if state in (_State.WAITING, _State.WRITING, _State.READY):
            raise SenderAlreadyActiveError("a sender is already active")
        raise InternalError(f"cannot create a sender in state {state.name}")

    async def receive(self) -> T:
        """Wait for the reply from the active sender and return it."""
        inner = self._inner
        while True:
            state = inner.state
            if state is _State.READY:
                inner.state = _State.READING
                value = inner.value
                inner.value = None
                inner.state = _State.IDLE
                return value
            if state in (_State.WAITING, _State.WRITING):
                await inner.wait()
                continue
            if state is _State.IDLE:
                raise NoSenderActiveError("no sender is active")
            raise InternalError(f"cannot receive in state {state.name}")

    def close(self) -> None:
        """Close the channel; pending and future sends fail."""
        inner = self._inner
        inner.state = _State.CLOSED
        inner.value = None
        inner.close()

    @property
    def closed(self) -> bool:
        return self._inner.state is _State.CLOSED

    def _peek(self) -> Optional[T]:
        return self._inner.value