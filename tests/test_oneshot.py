import asyncio

import pytest

from mnemos.oneshot import (
    ChannelClosedError,
    InternalError,
    NoSenderActiveError,
    Reusable,
    ReusableError,
    SenderAlreadyActiveError,
)


@pytest.mark.asyncio
async def test_send_then_receive():
    chan = Reusable()
    sender = chan.sender()
    sender.send("reply")
    assert await chan.receive() == "reply"


@pytest.mark.asyncio
async def test_receive_waits_for_send():
    chan = Reusable()
    sender = chan.sender()
    task = asyncio.create_task(chan.receive())
    await asyncio.sleep(0)
    assert not task.done()
    sender.send(42)
    assert await task == 42


@pytest.mark.asyncio
async def test_reusable_after_receive():
    chan = Reusable()
    for value in ["a", "b", "c"]:
        chan.sender().send(value)
        assert await chan.receive() == value


def test_second_sender_rejected():
    chan = Reusable()
    chan.sender()
    with pytest.raises(SenderAlreadyActiveError):
        chan.sender()


def test_sender_rejected_while_reply_unread():
    chan = Reusable()
    chan.sender().send(1)
    with pytest.raises(SenderAlreadyActiveError):
        chan.sender()


@pytest.mark.asyncio
async def test_receive_without_sender():
    chan = Reusable()
    with pytest.raises(NoSenderActiveError):
        await chan.receive()


@pytest.mark.asyncio
async def test_discarded_sender_wakes_receiver():
    chan = Reusable()
    sender = chan.sender()
    task = asyncio.create_task(chan.receive())
    await asyncio.sleep(0)
    sender.discard()
    (outcome,) = await asyncio.wait_for(
        asyncio.gather(task, return_exceptions=True), 1
    )
    assert isinstance(outcome, NoSenderActiveError)
    chan.sender().send("next")
    assert await chan.receive() == "next"


@pytest.mark.asyncio
async def test_context_manager_discards_unused_sender():
    chan = Reusable()
    with chan.sender():
        pass
    with pytest.raises(NoSenderActiveError):
        await chan.receive()
    second = chan.sender()
    second.send("again")
    assert await chan.receive() == "again"


def test_send_twice_is_internal_error():
    chan = Reusable()
    sender = chan.sender()
    sender.send(1)
    with pytest.raises(InternalError):
        sender.send(2)


def test_stale_sender_cannot_send_to_new_cycle():
    chan = Reusable()
    old = chan.sender()
    old.discard()
    chan.sender()
    with pytest.raises(InternalError):
        old.send("stale")


def test_send_after_close():
    chan = Reusable()
    sender = chan.sender()
    chan.close()
    with pytest.raises(ChannelClosedError):
        sender.send("late")
    assert chan.closed is True


def test_sender_after_close_is_internal_error():
    chan = Reusable()
    chan.close()
    with pytest.raises(InternalError):
        chan.sender()


@pytest.mark.asyncio
async def test_close_while_receiving():
    chan = Reusable()
    chan.sender()
    task = asyncio.create_task(chan.receive())
    await asyncio.sleep(0)
    chan.close()
    (outcome,) = await asyncio.wait_for(
        asyncio.gather(task, return_exceptions=True), 1
    )
    assert isinstance(outcome, ChannelClosedError)
    assert chan.closed is True


@pytest.mark.asyncio
async def test_errors_raised_share_base_class():
    busy = Reusable()
    busy.sender()
    with pytest.raises(ReusableError) as already_active:
        busy.sender()
    assert isinstance(already_active.value, SenderAlreadyActiveError)

    idle = Reusable()
    with pytest.raises(ReusableError) as no_sender:
        await idle.receive()
    assert isinstance(no_sender.value, NoSenderActiveError)

    closing = Reusable()
    sender = closing.sender()
    closing.close()
    with pytest.raises(ReusableError) as closed:
        sender.send("late")
    assert isinstance(closed.value, ChannelClosedError)

    with pytest.raises(ReusableError) as internal:
        closing.sender()
    assert isinstance(internal.value, InternalError)