"""The kernel: driver registry, user/kernel frame rings and the task scheduler.

The kernel owns a private event loop. Each call to ``tick`` first checks the
userspace request ring and then runs exactly one pass of that loop, so the
caller decides when kernel tasks make progress.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from dataclasses import dataclass
from typing import Any, Callable, Coroutine, Deque, Optional, Set, TypeVar

from mnemos.registry import Registry

logger = logging.getLogger(__name__)

R = TypeVar("R")


@dataclass(frozen=True)
class KernelSettings:
    """Sizes of the kernel's fixed resources."""

    max_drivers: int = 16
    k2u_size: int = 4096
    u2k_size: int = 4096


class FrameRing:
    """A bounded queue of byte frames, limited by their total size."""

    def __init__(self, capacity: int) -> None:
        if capacity < 1:
            raise ValueError(f"ring capacity must be positive, got {capacity}")
        self._capacity = capacity
        self._frames: Deque[bytes] = deque()
        self._used = 0

    @property
    def capacity(self) -> int:
        return self._capacity

    def __len__(self) -> int:
        return len(self._frames)

    def write(self, frame: bytes) -> None:
        """Append one frame, raising BufferError if there is no room for it."""
        frame = bytes(frame)
        if len(frame) > self._capacity - self._used:
            raise BufferError(
                f"frame of {len(frame)} bytes does not fit, "
                f"{self._capacity - self._used} bytes free"
            )
        self._frames.append(frame)
        self._used += len(frame)

    def read(self) -> Optional[bytes]:
        """Remove and return the oldest frame, or ``None`` if the ring is empty."""
        if not self._frames:
            return None
        frame = self._frames.popleft()
        self._used -= len(frame)
        return frame


@dataclass(frozen=True)
class Rings:
    """The user-to-kernel and kernel-to-user frame rings."""

    u2k: FrameRing
    k2u: FrameRing


class Kernel:
    """Owns the driver registry, the userspace rings and the kernel tasks."""

    def __init__(self, settings: Optional[KernelSettings] = None) -> None:
        settings = settings if settings is not None else KernelSettings()
        logger.info(
            "Initializing kernel max_drivers=%d u2k=%d k2u=%d",
            settings.max_drivers,
            settings.u2k_size,
            settings.k2u_size,
        )
        self._settings = settings
        self._registry = Registry(settings.max_drivers)
        self._rings = Rings(FrameRing(settings.u2k_size), FrameRing(settings.k2u_size))
        self._loop = asyncio.new_event_loop()
        self._registry_lock = asyncio.Lock()
        self._tasks: Set["asyncio.Task[Any]"] = set()

    @property
    def settings(self) -> KernelSettings:
        return self._settings

    @property
    def loop(self) -> asyncio.AbstractEventLoop:
        return self._loop

    @property
    def rings(self) -> Rings:
        return self._rings

    def _check_open(self) -> None:
        if self._loop.is_closed():
            raise RuntimeError("kernel has been closed")

    def _spawn(self, coro: Coroutine[Any, Any, R]) -> "asyncio.Task[R]":
        self._check_open()
        task = self._loop.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def tick(self) -> None:
        """Process userspace requests, then run one pass of the scheduler."""
        self._check_open()
        frame = self._rings.u2k.read()
        if frame is not None:
            raise RuntimeError(
                f"no driver dispatch for userspace request of {len(frame)} bytes"
            )
        self._loop.call_soon(self._loop.stop)
        self._loop.run_forever()

    def initialize(self, coro: Coroutine[Any, Any, R]) -> "asyncio.Task[R]":
        """Schedule ``coro`` as a kernel task before the scheduler is running."""
        return self._spawn(coro)

    async def spawn(self, coro: Coroutine[Any, Any, R]) -> "asyncio.Task[R]":
        """Schedule ``coro`` as a new kernel task."""
        return self._spawn(coro)

    async def with_registry(self, func: Callable[[Registry], R]) -> R:
        """Call ``func`` with exclusive access to the driver registry."""
        async with self._registry_lock:
            return func(self._registry)

    def close(self) -> None:
        """Cancel every pending task and close the scheduler."""
        if self._loop.is_closed():
            return
        pending = [task for task in self._tasks if not task.done()]
        for task in pending:
            task.cancel()
        if pending:
            self._loop.run_until_complete(asyncio.gather(*pending, return_exceptions=True))
        self._loop.close()

    def __enter__(self) -> "Kernel":
        return self

    def __exit__(self, *args: object) -> None:
        self.close()