"""Simulated drivers: a wall-clock delay and a serial port carried over TCP."""

from __future__ import annotations

import asyncio
import logging
import time
from datetime import timedelta
from typing import Any, Generator, Tuple, Union

from mnemos.bbq import BidiHandle, Consumer, SpscProducer, new_bidi_channel
from mnemos.kchannel import KChannel, KConsumer
from mnemos.registry import (
    AlreadyAssignedPortError,
    Message,
    RegistrationError,
    SimpleSerial,
    SimpleSerialResponse,
)
from mnemos.spitebuf import DequeueError

logger = logging.getLogger(__name__)

Address = Tuple[str, int]

_READ_CHUNK = 256


def default_addr() -> Address:
    """The address the simulated serial port listens on by default."""
    return ("127.0.0.1", 9999)


class Delay:
    """An awaitable that completes once ``duration`` has passed since creation."""

    def __init__(self, duration: Union[float, timedelta]) -> None:
        seconds = duration.total_seconds() if isinstance(duration, timedelta) else float(duration)
        if seconds < 0:
            raise ValueError(f"duration must not be negative, got {seconds}")
        self._deadline = time.monotonic() + seconds

    @property
    def done(self) -> bool:
        """Whether the delay has already elapsed."""
        return time.monotonic() >= self._deadline

    async def _wait(self) -> None:
        remaining = self._deadline - time.monotonic()
        if remaining > 0:
            await asyncio.sleep(remaining)

    def __await__(self) -> Generator[Any, None, None]:
        return self._wait().__await__()


async def _pump_out(consumer: Consumer, writer: asyncio.StreamWriter) -> None:
    while True:
        grant = await consumer.read_grant()
        with grant:
            data = bytes(grant)
            logger.debug("Got outgoing message len=%d", len(data))
            try:
                writer.write(data)
                await writer.drain()
            except (ConnectionError, OSError) as exc:
                logger.warning("Error writing to TCP stream: %s", exc)
                return
            grant.release(len(data))


async def _pump_in(producer: SpscProducer, reader: asyncio.StreamReader) -> None:
    while True:
        grant = await producer.send_grant_max(_READ_CHUNK)
        with grant:
            try:
                data = await reader.read(len(grant))
            except (ConnectionError, OSError) as exc:
                logger.warning("Error reading from TCP stream: %s", exc)
                return
            if not data:
                logger.warning("Empty read, socket probably closed.")
                return
            logger.debug("Got incoming message len=%d", len(data))
            grant[: len(data)] = data
            grant.commit(len(data))


async def process_stream(
    handle: BidiHandle, reader: asyncio.StreamReader, writer: asyncio.StreamWriter
) -> None:
    """Shuttle bytes between a TCP connection and the serial queues until it closes."""
    tasks = [
        asyncio.ensure_future(_pump_out(handle.consumer, writer)),
        asyncio.ensure_future(_pump_in(handle.producer, reader)),
    ]
    try:
        await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
    finally:
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        writer.close()
        try:
            await writer.wait_closed()
        except (ConnectionError, OSError):
            pass


async def _serve_requests(commands: KConsumer[Message], handle: BidiHandle) -> None:
    """Give the port to the first requester and refuse every later request."""
    try:
        first = await commands.dequeue_async()
    except DequeueError:
        return
    await first.reply.reply_konly(first.msg.reply_with(SimpleSerialResponse(handle)))
    while True:
        try:
            request = await commands.dequeue_async()
        except DequeueError:
            return
        refusal = AlreadyAssignedPortError("serial port already assigned")
        await request.reply.reply_konly(request.msg.reply_with(refusal))


class TcpSerial:
    """A simple serial port service whose far end is a TCP listener."""

    @classmethod
    async def register(
        cls, kernel: Any, addr: Address, incoming_size: int, outgoing_size: int
    ) -> asyncio.AbstractServer:
        """Listen on ``addr`` and register the simple serial service.

        Returns the listening server. Connections are served one at a time.
        """
        tcp_side, kernel_side = new_bidi_channel(incoming_size, outgoing_size)
        producer, commands = KChannel(2).split()

        serving = asyncio.Lock()

        async def on_connect(reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
            async with serving:
                logger.info("process_stream client=%s", writer.get_extra_info("peername"))
                await process_stream(tcp_side, reader, writer)

        host, port = addr
        server = await asyncio.start_server(on_connect, host, port)
        bound = server.sockets[0].getsockname()
        logger.info("TCP serial port driver listening on %s:%d", bound[0], bound[1])

        await kernel.spawn(_serve_requests(commands, kernel_side))
        try:
            await kernel.with_registry(lambda reg: reg.register_konly(SimpleSerial, producer))
        except RegistrationError:
            server.close()
            raise
        return server