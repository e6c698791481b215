import asyncio

import pytest

from mnemos.spitebuf import (
    DequeueError,
    EnqueueError,
    MpScQueue,
    QueueClosedError,
    QueueFullError,
)


@pytest.mark.parametrize("capacity", [0, 3, 6, 100])
def test_capacity_must_be_power_of_two(capacity):
    with pytest.raises(ValueError):
        MpScQueue(capacity)


@pytest.mark.parametrize("capacity", [1, 2, 4, 64])
def test_power_of_two_capacity_accepted(capacity):
    q = MpScQueue(capacity)
    assert q.capacity == capacity
    assert len(q) == 0


def test_fifo_order():
    q = MpScQueue(4)
    for item in ["a", "b", "c", "d"]:
        q.enqueue_sync(item)
    assert [q.dequeue_sync() for _ in range(4)] == ["a", "b", "c", "d"]
    assert q.dequeue_sync() is None


def test_full_queue_rejects_and_returns_item():
    q = MpScQueue(2)
    q.enqueue_sync(1)
    q.enqueue_sync(2)
    with pytest.raises(QueueFullError) as info:
        q.enqueue_sync(3)
    assert info.value.item == 3
    assert isinstance(info.value, EnqueueError)
    assert len(q) == 2


def test_wraparound_many_cycles():
    q = MpScQueue(2)
    out = []
    for i in range(50):
        q.enqueue_sync(i)
        out.append(q.dequeue_sync())
    assert out == list(range(50))


def test_close_rejects_but_drains():
    q = MpScQueue(4)
    q.enqueue_sync("x")
    q.close()
    with pytest.raises(QueueClosedError) as info:
        q.enqueue_sync("y")
    assert info.value.item == "y"
    assert q.closed
    assert q.dequeue_sync() == "x"
    assert q.dequeue_sync() is None


@pytest.mark.asyncio
async def test_dequeue_async_waits_for_item():
    q = MpScQueue(2)

    async def later():
        await asyncio.sleep(0.01)
        q.enqueue_sync("hello")

    task = asyncio.create_task(later())
    assert await asyncio.wait_for(q.dequeue_async(), 1) == "hello"
    await task


@pytest.mark.asyncio
async def test_dequeue_async_drains_then_errors_after_close():
    q = MpScQueue(2)
    q.enqueue_sync(7)
    q.close()
    assert await q.dequeue_async() == 7
    with pytest.raises(DequeueError):
        await q.dequeue_async()


@pytest.mark.asyncio
async def test_waiting_consumer_fails_on_close():
    q = MpScQueue(2)
    task = asyncio.create_task(q.dequeue_async())
    await asyncio.sleep(0)
    q.close()
    (outcome,) = await asyncio.wait_for(
        asyncio.gather(task, return_exceptions=True), 1
    )
    assert isinstance(outcome, DequeueError)
    assert q.closed is True
    assert q.dequeue_sync() is None


@pytest.mark.asyncio
async def test_enqueue_async_waits_for_room():
    q = MpScQueue(1)
    q.enqueue_sync("first")
    task = asyncio.create_task(q.enqueue_async("second"))
    await asyncio.sleep(0)
    assert not task.done()
    assert q.dequeue_sync() == "first"
    await asyncio.wait_for(task, 1)
    assert q.dequeue_sync() == "second"


@pytest.mark.asyncio
async def test_blocked_producer_fails_on_close():
    q = MpScQueue(1)
    q.enqueue_sync("first")
    task = asyncio.create_task(q.enqueue_async("second"))
    await asyncio.sleep(0)
    q.close()
    (outcome,) = await asyncio.wait_for(
        asyncio.gather(task, return_exceptions=True), 1
    )
    assert isinstance(outcome, QueueClosedError)
    assert outcome.item == "second"
    assert q.dequeue_sync() == "first"
    assert q.dequeue_sync() is None


@pytest.mark.asyncio
async def test_many_producers_one_consumer():
    q = MpScQueue(2)
    items = list(range(20))

    async def produce(values):
        for v in values:
            await q.enqueue_async(v)

    producers = [
        asyncio.create_task(produce(items[:10])),
        asyncio.create_task(produce(items[10:])),
    ]
    received = [await asyncio.wait_for(q.dequeue_async(), 1) for _ in items]
    await asyncio.gather(*producers)
    assert sorted(received) == items
    assert [v for v in received if v < 10] == items[:10]