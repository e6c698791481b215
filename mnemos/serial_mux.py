"""Virtual serial ports multiplexed over one framed serial link.

Each frame on the link is COBS encoded and zero terminated. Decoded, it
starts with the port number as two little-endian bytes, followed by the
payload for that port.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, List, Optional

from mnemos import cobs
from mnemos.bbq import Consumer, MpscProducer, SpscProducer, new_spsc_channel
from mnemos.kchannel import KChannel, KConsumer
from mnemos.oneshot import Reusable, ReusableError
from mnemos.registry import (
    SERIAL_MUX_UUID,
    Envelope,
    KernelHandle,
    Message,
    RegisteredDriver,
    RegistrationError,
    ReplyTo,
    SimpleSerial,
)
from mnemos.spitebuf import DequeueError, EnqueueError

logger = logging.getLogger(__name__)


class SerialMuxError(Exception):
    """A virtual port could not be opened."""


class DuplicatePortError(SerialMuxError):
    """The port number is already open."""


class PortTableFullError(SerialMuxError):
    """The mux already has its maximum number of ports."""


class MuxRegistrationError(Exception):
    """The serial mux service could not be registered."""


class SerialPortNotFoundError(MuxRegistrationError):
    """No simple serial service is registered."""


class NoSerialPortAvailableError(MuxRegistrationError):
    """The simple serial service did not hand out its port."""


class MuxAlreadyRegisteredError(MuxRegistrationError):
    """A serial mux service is already registered."""


class PortHandle:
    """An open virtual serial port."""

    def __init__(self, port: int, consumer: Consumer, outgoing: MpscProducer, max_frame: int) -> None:
        self._port = port
        self._consumer = consumer
        self._outgoing = outgoing
        self._max_frame = max_frame

    @property
    def port(self) -> int:
        return self._port

    @property
    def consumer(self) -> Consumer:
        """The queue of bytes received on this port."""
        return self._consumer

    async def send(self, data: bytes) -> None:
        """Send ``data`` out of this port, split into frames as needed."""
        chunk_size = self._max_frame // 2
        if chunk_size == 0:
            raise ValueError(f"max frame of {self._max_frame} bytes is too small")
        data = bytes(data)
        header = self._port.to_bytes(2, "little")
        for start in range(0, len(data), chunk_size):
            chunk = data[start : start + chunk_size]
            limit = cobs.max_encoding_length(len(chunk) + 2)
            grant = await self._outgoing.send_grant_exact(limit + 1)
            encoded = cobs.encode(header + chunk)
            grant[: len(encoded)] = encoded
            grant[len(encoded)] = 0
            grant.commit(len(encoded) + 1)


@dataclass(frozen=True)
class RegisterPort:
    """Request to open a port with a receive queue of ``capacity`` bytes."""

    port_id: int
    capacity: int


@dataclass
class PortRegistered:
    """Reply carrying a newly opened port."""

    handle: PortHandle


@dataclass
class _PortInfo:
    port: int
    upstream: SpscProducer


@dataclass
class _MuxingInfo:
    max_ports: int
    max_frame: int
    ports: List[_PortInfo] = field(default_factory=list)
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)

    def register_port(self, port_id: int, capacity: int, outgoing: MpscProducer) -> PortHandle:
        if len(self.ports) >= self.max_ports:
            raise PortTableFullError(f"at most {self.max_ports} ports")
        if any(info.port == port_id for info in self.ports):
            raise DuplicatePortError(f"port {port_id} is already open")
        producer, consumer = new_spsc_channel(capacity)
        self.ports.append(_PortInfo(port_id, producer))
        return PortHandle(port_id, consumer, outgoing.clone(), self.max_frame)

    def find(self, port_id: int) -> Optional[_PortInfo]:
        return next((info for info in self.ports if info.port == port_id), None)


async def _run_commander(cmd: KConsumer[Message], out: MpscProducer, mux: _MuxingInfo) -> None:
    while True:
        try:
            message = await cmd.dequeue_async()
        except DequeueError:
            return
        request = message.msg.body
        if not isinstance(request, RegisterPort):
            logger.warning("Ignoring unknown serial mux request %r", request)
            continue
        async with mux.lock:
            try:
                body: Any = PortRegistered(
                    mux.register_port(request.port_id, request.capacity, out)
                )
            except SerialMuxError as exc:
                body = exc
        await message.reply.reply_konly(message.msg.reply_with(body))


class _IncomingMuxer:
    """Splits the incoming byte stream into frames and routes them to ports."""

    def __init__(self, incoming: Consumer, mux: _MuxingInfo) -> None:
        self._incoming = incoming
        self._mux = mux
        self._acc = bytearray()

    def _frames(self, data: bytes) -> List[bytes]:
        frames = []
        limit = self._mux.max_frame
        start = 0
        while start < len(data):
            end = data.find(0, start)
            chunk = data[start : end + 1] if end >= 0 else data[start:]
            start += len(chunk)
            if end < 0:
                if len(self._acc) + len(chunk) <= limit:
                    self._acc += chunk
                else:
                    logger.warning("Overfilled accumulator")
                    self._acc.clear()
                continue
            if not self._acc:
                frames.append(chunk)
                continue
            if len(self._acc) + len(chunk) <= limit:
                self._acc += chunk
                frames.append(bytes(self._acc))
            else:
                logger.warning("Overfilled accumulator")
            self._acc.clear()
        return frames

    async def _dispatch(self, frame: bytes) -> None:
        try:
            decoded = cobs.decode(frame)
        except cobs.CobsDecodeError:
            logger.warning("Cobs decode failed!")
            return
        if len(decoded) < 3:
            logger.warning("Cobs decode too short!")
            return
        port_id = int.from_bytes(decoded[:2], "little")
        payload = decoded[2:]
        async with self._mux.lock:
            info = self._mux.find(port_id)
            if info is None:
                logger.warning("Discarded %d bytes for port %d, no consumer", len(payload), port_id)
                return
            grant = info.upstream.send_grant_exact_sync(len(payload))
            if grant is None:
                logger.warning("Discarded %d bytes for port %d, full buffer", len(payload), port_id)
                return
            grant[: len(payload)] = payload
            grant.commit(len(payload))
            logger.debug("Sent %d bytes to port %d", len(payload), port_id)

    async def run(self) -> None:
        while True:
            grant = await self._incoming.read_grant()
            data = bytes(grant)
            for frame in self._frames(data):
                await self._dispatch(frame)
            grant.release(len(data))
            logger.debug("processed %d incoming bytes", len(data))


class SerialMux(RegisteredDriver):
    """The serial multiplexer driver service."""

    UUID = SERIAL_MUX_UUID
    Request = RegisterPort
    Response = PortRegistered
    Error = SerialMuxError

    @classmethod
    async def register(cls, kernel: Any, max_ports: int, max_frame: int) -> None:
        """Take the simple serial port and register the mux service on it."""
        serial = await SimpleSerial.from_registry(kernel)
        if serial is None:
            raise SerialPortNotFoundError("no simple serial service registered")
        port = await serial.get_port()
        if port is None:
            raise NoSerialPortAvailableError("simple serial port is not available")

        sprod, scons = port.split()
        outgoing = sprod.into_mpsc_producer()
        mux = _MuxingInfo(max_ports=max_ports, max_frame=max_frame)
        cmd_prod, cmd_cons = KChannel(max_ports).split()

        await kernel.spawn(_run_commander(cmd_cons, outgoing, mux))
        await kernel.spawn(_IncomingMuxer(scons, mux).run())

        try:
            await kernel.with_registry(lambda reg: reg.register_konly(cls, cmd_prod))
        except RegistrationError as exc:
            raise MuxAlreadyRegisteredError("serial mux already registered") from exc


class SerialMuxHandle:
    """Client interface of the serial mux service."""

    def __init__(self, handle: KernelHandle, reply: Reusable[Envelope[Any]]) -> None:
        self._handle = handle
        self._reply = reply

    @classmethod
    async def from_registry(cls, kernel: Any) -> Optional["SerialMuxHandle"]:
        """Look the mux up in the kernel's registry; ``None`` if absent."""
        handle = await kernel.with_registry(lambda reg: reg.get(SerialMux))
        if handle is None:
            return None
        return cls(handle, Reusable())

    async def open_port(self, port_id: int, capacity: int) -> Optional[PortHandle]:
        """Open a virtual port; ``None`` if the mux refuses or is unreachable."""
        try:
            sender = self._reply.sender()
        except ReusableError:
            return None
        try:
            await self._handle.send(RegisterPort(port_id, capacity), ReplyTo.oneshot(sender))
        except EnqueueError:
            sender.discard()
            return None
        try:
            envelope = await self._reply.receive()
        except ReusableError:
            return None
        body = envelope.body
        if not isinstance(body, PortRegistered):
            return None
        return body.handle