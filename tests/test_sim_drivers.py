import asyncio
import time
from datetime import timedelta

import pytest

from mnemos.bbq import new_bidi_channel
from mnemos.kernel import Kernel
from mnemos.registry import SimpleSerial, UuidAlreadyRegisteredError
from mnemos.sim_drivers import Delay, TcpSerial, default_addr, process_stream

LOCALHOST = "127.0.0.1"


def run_in_kernel(kernel, coro, timeout=5.0):
    task = kernel.initialize(coro)
    deadline = time.monotonic() + timeout
    while not task.done():
        if time.monotonic() > deadline:
            raise AssertionError("kernel task timed out")
        kernel.tick()
    return task.result()


async def read_exactly(consumer, count):
    buf = b""
    while len(buf) < count:
        grant = await consumer.read_grant()
        data = bytes(grant)
        grant.release(len(data))
        buf += data
    return buf


def test_default_addr():
    assert default_addr() == ("127.0.0.1", 9999)


def test_delay_waits_at_least_duration():
    async def scenario():
        start = time.monotonic()
        delay = Delay(0.05)
        before = delay.done
        await delay
        return before, delay.done, time.monotonic() - start

    before, after, elapsed = asyncio.run(scenario())
    assert before is False
    assert after is True
    assert elapsed >= 0.05


def test_delay_accepts_timedelta():
    delay = Delay(timedelta(seconds=30))
    assert delay.done is False


def test_delay_starts_at_construction():
    delay = Delay(0.02)
    time.sleep(0.03)
    assert delay.done is True


def test_delay_rejects_negative_duration():
    with pytest.raises(ValueError):
        Delay(-1)


def test_process_stream_moves_bytes_both_ways_and_ends_on_eof():
    async def scenario():
        tcp_side, kernel_side = new_bidi_channel(64, 64)
        finished = asyncio.get_running_loop().create_future()

        async def serve(reader, writer):
            await process_stream(tcp_side, reader, writer)
            finished.set_result(True)

        server = await asyncio.start_server(serve, LOCALHOST, 0)
        port = server.sockets[0].getsockname()[1]
        reader, writer = await asyncio.open_connection(LOCALHOST, port)

        writer.write(b"abc")
        await writer.drain()
        incoming = await asyncio.wait_for(read_exactly(kernel_side.consumer, 3), 2)

        grant = await kernel_side.producer.send_grant_exact(3)
        grant[:3] = b"xyz"
        grant.commit(3)
        outgoing = await asyncio.wait_for(reader.readexactly(3), 2)

        writer.close()
        await writer.wait_closed()
        ended = await asyncio.wait_for(finished, 2)
        server.close()
        return incoming, outgoing, ended

    incoming, outgoing, ended = asyncio.run(scenario())
    assert incoming == b"abc"
    assert outgoing == b"xyz"
    assert ended is True


def test_tcp_serial_hands_out_port_once():
    async def scenario(kernel):
        server = await TcpSerial.register(kernel, (LOCALHOST, 0), 64, 64)
        port = server.sockets[0].getsockname()[1]
        serial = await SimpleSerial.from_registry(kernel)
        handle = await serial.get_port()
        second = await serial.get_port()

        reader, writer = await asyncio.open_connection(LOCALHOST, port)
        writer.write(b"ping")
        await writer.drain()
        got = await read_exactly(handle.consumer, 4)

        grant = await handle.producer.send_grant_exact(4)
        grant[:4] = b"pong"
        grant.commit(4)
        echoed = await reader.readexactly(4)

        writer.close()
        await writer.wait_closed()
        await asyncio.sleep(0.05)
        server.close()
        return handle, second, got, echoed

    with Kernel() as kernel:
        handle, second, got, echoed = run_in_kernel(kernel, scenario(kernel))

    assert handle is not None
    assert second is None
    assert got == b"ping"
    assert echoed == b"pong"


def test_tcp_serial_cannot_register_twice():
    async def scenario(kernel):
        first = await TcpSerial.register(kernel, (LOCALHOST, 0), 16, 16)
        try:
            with pytest.raises(UuidAlreadyRegisteredError):
                await TcpSerial.register(kernel, (LOCALHOST, 0), 16, 16)
        finally:
            first.close()
        return True

    with Kernel() as kernel:
        assert run_in_kernel(kernel, scenario(kernel)) is True