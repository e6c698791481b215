import asyncio

import pytest

from mnemos import cobs
from mnemos.bbq import new_bidi_channel
from mnemos.kchannel import KChannel
from mnemos.kernel import Kernel, KernelSettings
from mnemos.registry import AlreadyAssignedPortError, SimpleSerial, SimpleSerialResponse
from mnemos.serial_mux import (
    MuxAlreadyRegisteredError,
    NoSerialPortAvailableError,
    SerialMux,
    SerialMuxHandle,
    SerialPortNotFoundError,
)


def run(kernel, coro, ticks=20000):
    task = kernel.initialize(coro)
    for _ in range(ticks):
        if task.done():
            break
        kernel.tick()
    return task.result()


@pytest.fixture
def kernel():
    k = Kernel(KernelSettings())
    yield k
    k.close()


async def serve_serial_once(cons, handle):
    msg = await cons.dequeue_async()
    await msg.reply.reply_konly(msg.msg.reply_with(SimpleSerialResponse(handle)))
    while True:
        msg = await cons.dequeue_async()
        await msg.reply.reply_konly(msg.msg.reply_with(AlreadyAssignedPortError()))


async def serve_serial_always(cons):
    while True:
        msg = await cons.dequeue_async()
        _a, b = new_bidi_channel(256, 256)
        await msg.reply.reply_konly(msg.msg.reply_with(SimpleSerialResponse(b)))


async def add_serial(kernel):
    a, b = new_bidi_channel(4096, 4096)
    prod, cons = KChannel(2).split()
    await kernel.spawn(serve_serial_once(cons, b))
    await kernel.with_registry(lambda reg: reg.register_konly(SimpleSerial, prod))
    return a


async def setup(kernel, max_ports=4, max_frame=512):
    tcp = await add_serial(kernel)
    await SerialMux.register(kernel, max_ports, max_frame)
    return tcp


async def write(producer, data):
    grant = await producer.send_grant_exact(len(data))
    grant[: len(data)] = data
    grant.commit(len(data))


async def read_some(consumer):
    grant = await consumer.read_grant()
    data = bytes(grant)
    grant.release(len(data))
    return data


def frame(port, payload):
    return cobs.encode(port.to_bytes(2, "little") + payload) + b"\x00"


def test_outgoing_data_is_framed(kernel):
    async def scenario():
        tcp = await setup(kernel)
        mux = await SerialMuxHandle.from_registry(kernel)
        port = await mux.open_port(0, 1024)
        await port.send(b"hello\r\n")
        return port.port, await read_some(tcp.consumer)

    port_id, data = run(kernel, scenario())
    assert port_id == 0
    assert data.endswith(b"\x00")
    assert data.count(0) == 1
    assert cobs.decode(data) == b"\x00\x00hello\r\n"


def test_outgoing_data_is_split_into_chunks(kernel):
    async def scenario():
        tcp = await setup(kernel, max_frame=8)
        mux = await SerialMuxHandle.from_registry(kernel)
        port = await mux.open_port(3, 64)
        await port.send(b"abcdefghij")
        collected = bytearray()
        while collected.count(0) < 3:
            collected += await read_some(tcp.consumer)
        return bytes(collected)

    data = run(kernel, scenario())
    frames = [cobs.decode(f) for f in data.split(b"\x00")[:-1]]
    assert len(frames) == 3
    assert all(f[:2] == (3).to_bytes(2, "little") for f in frames)
    assert all(len(f) <= 2 + 4 for f in frames)
    assert b"".join(f[2:] for f in frames) == b"abcdefghij"


def test_incoming_frame_reaches_port(kernel):
    async def scenario():
        tcp = await setup(kernel)
        mux = await SerialMuxHandle.from_registry(kernel)
        port = await mux.open_port(1, 64)
        await write(tcp.producer, frame(1, b"ping"))
        return await read_some(port.consumer)

    assert run(kernel, scenario()) == b"ping"


def test_frame_split_across_writes_is_reassembled(kernel):
    async def scenario():
        tcp = await setup(kernel)
        mux = await SerialMuxHandle.from_registry(kernel)
        port = await mux.open_port(1, 64)
        whole = frame(1, b"ping")
        await write(tcp.producer, whole[:3])
        for _ in range(5):
            await asyncio.sleep(0)
        await write(tcp.producer, whole[3:])
        return await read_some(port.consumer)

    assert run(kernel, scenario()) == b"ping"


def test_bad_and_unrouted_frames_are_discarded(kernel):
    async def scenario():
        tcp = await setup(kernel)
        mux = await SerialMuxHandle.from_registry(kernel)
        port = await mux.open_port(1, 64)
        junk = b"\x05ab\x00" + frame(7, b"lost") + cobs.encode(b"\x01\x00") + b"\x00"
        await write(tcp.producer, junk + frame(1, b"ping"))
        return await read_some(port.consumer)

    assert run(kernel, scenario()) == b"ping"


def test_duplicate_port_is_refused(kernel):
    async def scenario():
        await setup(kernel)
        mux = await SerialMuxHandle.from_registry(kernel)
        first = await mux.open_port(0, 64)
        second = await mux.open_port(0, 64)
        return first, second

    first, second = run(kernel, scenario())
    assert first.port == 0
    assert second is None


def test_port_table_limit(kernel):
    async def scenario():
        await setup(kernel, max_ports=4)
        mux = await SerialMuxHandle.from_registry(kernel)
        return [await mux.open_port(i, 64) for i in range(5)]

    ports = run(kernel, scenario())
    assert [p.port for p in ports[:4]] == [0, 1, 2, 3]
    assert ports[4] is None


def test_handle_absent_without_mux(kernel):
    async def scenario():
        return await SerialMuxHandle.from_registry(kernel)

    assert run(kernel, scenario()) is None


def test_register_without_serial_port(kernel):
    with pytest.raises(SerialPortNotFoundError):
        run(kernel, SerialMux.register(kernel, 4, 512))


def test_register_when_port_already_taken(kernel):
    async def scenario():
        await setup(kernel)
        await SerialMux.register(kernel, 4, 512)

    with pytest.raises(NoSerialPortAvailableError):
        run(kernel, scenario())


def test_register_twice(kernel):
    async def scenario():
        prod, cons = KChannel(2).split()
        await kernel.spawn(serve_serial_always(cons))
        await kernel.with_registry(lambda reg: reg.register_konly(SimpleSerial, prod))
        await SerialMux.register(kernel, 4, 512)
        await SerialMux.register(kernel, 4, 512)

    with pytest.raises(MuxAlreadyRegisteredError):
        run(kernel, scenario())


def test_send_rejects_tiny_frames(kernel):
    async def scenario():
        await setup(kernel, max_frame=1)
        mux = await SerialMuxHandle.from_registry(kernel)
        port = await mux.open_port(0, 64)
        await port.send(b"x")

    with pytest.raises(ValueError):
        run(kernel, scenario())