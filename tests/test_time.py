import asyncio
from datetime import timedelta

import pytest

from mnemos.time import (
    TICKS_PER_SEC,
    Alarm,
    Chronos,
    Clock,
    Instant,
    TimerOverflowError,
)


def test_clock_advance_and_set():
    clock = Clock(10)
    clock.advance(timedelta(microseconds=5))
    assert clock.ticks == 15
    clock.set(3)
    assert clock.ticks == 3


def test_clock_rejects_negative_duration():
    clock = Clock()
    with pytest.raises(ValueError):
        clock.advance(timedelta(seconds=-1))


def test_instant_add_one_second():
    assert Instant(0) + timedelta(seconds=1) == Instant(TICKS_PER_SEC)


def test_instant_add_then_sub_round_trip():
    start = Instant(1234)
    step = timedelta(seconds=3, microseconds=77)
    assert (start + step) - start == step


def test_instant_sub_earlier_from_later_raises():
    with pytest.raises(ValueError):
        Instant(1) - Instant(2)


def test_instant_elapsed():
    clock = Clock(100)
    start = Instant.now(clock)
    clock.advance(timedelta(milliseconds=2))
    assert start.elapsed(clock) == timedelta(milliseconds=2)


def test_elapsed_of_future_instant_raises():
    clock = Clock(0)
    with pytest.raises(ValueError):
        Instant(50).elapsed(clock)


def test_alarm_after_and_expiry():
    clock = Clock(0)
    alarm = Alarm.after(clock, timedelta(microseconds=10))
    assert not alarm.is_expired(clock)
    clock.advance(timedelta(microseconds=10))
    assert alarm.is_expired(clock)


def test_alarm_never_does_not_expire():
    clock = Clock(0)
    clock.advance(timedelta(days=365 * 100))
    assert not Alarm.never().is_expired(clock)
    assert Alarm.never() > Alarm(clock.ticks)


def test_poll_wakes_only_expired_in_order():
    clock = Clock(0)
    chronos = Chronos(clock)
    woken = []
    chronos.register(Alarm(30), lambda: woken.append("c"))
    chronos.register(Alarm(10), lambda: woken.append("a"))
    chronos.register(Alarm(20), lambda: woken.append("b"))
    clock.set(20)
    chronos.poll()
    assert woken == ["a", "b"]
    assert len(chronos) == 1
    clock.set(30)
    chronos.poll()
    assert woken == ["a", "b", "c"]
    assert len(chronos) == 0


def test_poll_without_expired_alarms_keeps_them():
    clock = Clock(0)
    chronos = Chronos(clock)
    woken = []
    chronos.register(Alarm(5), lambda: woken.append(1))
    chronos.poll()
    assert woken == []
    assert len(chronos) == 1


def test_register_overflow():
    chronos = Chronos(Clock(0), capacity=2)
    chronos.register(Alarm(1), lambda: None)
    chronos.register(Alarm(2), lambda: None)
    with pytest.raises(TimerOverflowError):
        chronos.register(Alarm(3), lambda: None)


@pytest.mark.asyncio
async def test_sleep_completes_after_advance_and_poll():
    clock = Clock(0)
    chronos = Chronos(clock)
    task = asyncio.ensure_future(chronos.sleep(timedelta(milliseconds=5)))
    await asyncio.sleep(0)
    assert not task.done()
    assert len(chronos) == 1
    clock.advance(timedelta(milliseconds=5))
    chronos.poll()
    await asyncio.wait_for(task, timeout=1)
    assert task.done()
    assert len(chronos) == 0


@pytest.mark.asyncio
async def test_sleep_until_expired_returns_at_once():
    clock = Clock(100)
    chronos = Chronos(clock)
    await chronos.sleep_until(Alarm(50))
    assert len(chronos) == 0