"""Monotonic microsecond time, alarms, and a timer wheel that wakes sleepers.

Time is kept by a ``Clock`` in ticks of one microsecond. The clock only
moves when its owner advances or sets it. A ``Chronos`` holds a bounded,
ordered list of pending alarms. Each ``poll`` wakes every alarm whose tick
has been reached.
"""

from __future__ import annotations

import asyncio
import threading
from dataclasses import dataclass
from datetime import timedelta
from typing import Callable, List, Tuple

from mnemos.arfcell import ArfCell

TICKS_PER_SEC = 1_000_000
_U64_MAX = (1 << 64) - 1

Waker = Callable[[], None]


class TimerOverflowError(RuntimeError):
    """The timer list has no room for another alarm."""


def _to_ticks(duration: timedelta) -> int:
    if duration < timedelta(0):
        raise ValueError(f"duration must not be negative, got {duration}")
    whole_seconds = duration.days * 86_400 + duration.seconds
    return whole_seconds * TICKS_PER_SEC + duration.microseconds


def _checked_tick(tick: int) -> int:
    if not 0 <= tick <= _U64_MAX:
        raise OverflowError(f"tick {tick} is outside the 64-bit range")
    return tick


class Clock:
    """The current time, in microsecond ticks."""

    def __init__(self, ticks: int = 0) -> None:
        self._cell: ArfCell[int] = ArfCell(_checked_tick(ticks))

    @property
    def ticks(self) -> int:
        with self._cell.borrow() as guard:
            return guard.value

    def advance(self, duration: timedelta) -> None:
        """Move the clock forward by ``duration``."""
        step = _to_ticks(duration)
        with self._cell.borrow_mut() as guard:
            guard.value = _checked_tick(guard.value + step)

    def set(self, ticks: int) -> None:
        """Set the clock to an absolute tick count."""
        with self._cell.borrow_mut() as guard:
            guard.value = _checked_tick(ticks)


@dataclass(frozen=True, order=True)
class Instant:
    """A point in time on a Clock."""

    tick: int

    @classmethod
    def now(cls, clock: Clock) -> "Instant":
        return cls(clock.ticks)

    def elapsed(self, clock: Clock) -> timedelta:
        """Time passed since this instant; raises if the instant is in the future."""
        return Instant.now(clock) - self

    def __sub__(self, other: object) -> timedelta:
        if not isinstance(other, Instant):
            return NotImplemented
        delta = self.tick - other.tick
        if delta < 0:
            raise ValueError("cannot subtract a later instant from an earlier one")
        return timedelta(microseconds=delta)

    def __add__(self, duration: object) -> "Instant":
        if not isinstance(duration, timedelta):
            return NotImplemented
        return Instant(_checked_tick(self.tick + _to_ticks(duration)))


@dataclass(frozen=True, order=True)
class Alarm:
    """A deadline, expressed as a tick on a Clock."""

    tick: int

    @classmethod
    def after(cls, clock: Clock, duration: timedelta) -> "Alarm":
        """An alarm ``duration`` from the clock's current time."""
        return cls((Instant.now(clock) + duration).tick)

    def is_expired(self, clock: Clock) -> bool:
        return clock.ticks >= self.tick

    @classmethod
    def never(cls) -> "Alarm":
        """An alarm that never expires."""
        return cls(_U64_MAX)


class Chronos:
    """A bounded, ordered set of pending alarms and the wakers waiting on them."""

    def __init__(self, clock: Clock, capacity: int = 32) -> None:
        if capacity < 1:
            raise ValueError(f"capacity must be positive, got {capacity}")
        self._clock = clock
        self._capacity = capacity
        self._pending: List[Tuple[Alarm, Waker]] = []
        self._lock = threading.Lock()

    @property
    def clock(self) -> Clock:
        return self._clock

    def __len__(self) -> int:
        return len(self._pending)

    def poll(self) -> None:
        """Wake, in deadline order, every alarm that has expired."""
        now = self._clock.ticks
        with self._lock:
            if not self._pending or self._pending[0][0].tick > now:
                return
            due = [waker for alarm, waker in self._pending if alarm.tick <= now]
            self._pending = [entry for entry in self._pending if entry[0].tick > now]
        for waker in due:
            waker()

    def register(self, alarm: Alarm, waker: Waker) -> None:
        """Call ``waker`` once ``alarm`` has expired and the wheel is polled."""
        with self._lock:
            if len(self._pending) >= self._capacity:
                raise TimerOverflowError("Timer overflow!")
            self._pending.append((alarm, waker))
            self._pending.sort(key=lambda entry: entry[0].tick)

    async def sleep_until(self, alarm: Alarm) -> None:
        """Wait until ``alarm`` has expired."""
        while not alarm.is_expired(self._clock):
            loop = asyncio.get_running_loop()
            fut: asyncio.Future[None] = loop.create_future()

            def _resolve(target: "asyncio.Future[None]" = fut) -> None:
                if not target.done():
                    target.set_result(None)

            def wake(loop: asyncio.AbstractEventLoop = loop) -> None:
                if not loop.is_closed():
                    loop.call_soon_threadsafe(_resolve)

            self.register(alarm, wake)
            await fut

    async def sleep(self, duration: timedelta) -> None:
        """Wait for ``duration`` of clock time."""
        await self.sleep_until(Alarm.after(self._clock, duration))