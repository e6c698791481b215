"""Bridge between the multiplexed serial link and one TCP listener per port.

The link carries COBS frames, each terminated by a zero byte. A decoded
frame holds the port number as two little-endian bytes and the payload.
Port ``N`` is served on local TCP port ``10000 + N``.
"""

from __future__ import annotations

import argparse
import contextlib
import queue
import socket
import threading
import time
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence

from mnemos import cobs
from mnemos.cobs import CobsDecodeError

SERIAL_ADDR = ("127.0.0.1", 9999)
BASE_PORT = 10_000
PORTS = (0, 1)
_POLL_INTERVAL = 0.01


@dataclass(frozen=True)
class Chunk:
    """A payload addressed to one virtual port."""

    port: int
    buf: bytes


def encode_chunk(port: int, payload: bytes) -> bytes:
    """Frame ``payload`` for ``port``: COBS encoded and zero terminated."""
    if not 0 <= port <= 0xFFFF:
        raise ValueError(f"port must fit in 16 bits, got {port}")
    return cobs.encode(port.to_bytes(2, "little") + bytes(payload)) + b"\x00"


def decode_chunk(frame: bytes) -> Chunk:
    """Decode one zero-terminated frame into its port and payload."""
    decoded = cobs.decode(frame)
    if len(decoded) < 2:
        raise CobsDecodeError(f"frame of {len(decoded)} bytes has no port header")
    return Chunk(int.from_bytes(decoded[:2], "little"), decoded[2:])


class _FrameSplitter:
    """Collects bytes and yields each complete zero-terminated frame."""

    def __init__(self) -> None:
        self._carry = bytearray()

    def feed(self, data: bytes) -> List[bytes]:
        self._carry += data
        frames = []
        while True:
            pos = self._carry.find(0)
            if pos < 0:
                return frames
            frames.append(bytes(self._carry[: pos + 1]))
            del self._carry[: pos + 1]


@dataclass
class _Worker:
    port: int
    listener: socket.socket
    out: "queue.Queue[bytes]" = field(default_factory=queue.Queue)
    inp: "queue.Queue[bytes]" = field(default_factory=queue.Queue)

    def serve(self) -> None:
        while True:
            try:
                conn, _ = self.listener.accept()
            except OSError:
                print("AAAARGH")
                raise
            print(f"Listening to port {BASE_PORT + self.port} ({self.port})")
            with conn:
                conn.settimeout(_POLL_INTERVAL)
                self._pump(conn)

    def _pump(self, conn: socket.socket) -> None:
        while True:
            try:
                msg = self.out.get(timeout=0.001)
            except queue.Empty:
                pass
            else:
                try:
                    conn.sendall(msg)
                except OSError as exc:
                    print(f"wtf? {exc!r}")
                    return
            try:
                data = conn.recv(128)
            except TimeoutError:
                continue
            except OSError:
                data = b""
            if not data:
                with contextlib.suppress(OSError):
                    conn.shutdown(socket.SHUT_RDWR)
                return
            print("yey!")
            self.inp.put(data)


def _start_workers() -> Dict[int, _Worker]:
    workers: Dict[int, _Worker] = {}
    for port in PORTS:
        listener = socket.create_server(("127.0.0.1", BASE_PORT + port))
        worker = _Worker(port, listener)
        threading.Thread(target=worker.serve, name=f"port-{port}", daemon=True).start()
        workers[port] = worker
    return workers


def _run(link: socket.socket, workers: Dict[int, _Worker]) -> None:
    splitter = _FrameSplitter()
    while True:
        for port, worker in workers.items():
            try:
                msg = worker.inp.get_nowait()
            except queue.Empty:
                continue
            frame = encode_chunk(port, msg)
            print(f"Sending {len(frame)} bytes to port {port}")
            link.sendall(frame)

        try:
            data = link.recv(256)
        except TimeoutError:
            continue
        if not data:
            continue

        for frame in splitter.feed(data):
            try:
                chunk = decode_chunk(frame)
            except CobsDecodeError:
                print("Bad decode!")
                continue
            worker = workers.get(chunk.port)
            if worker is not None:
                print(f"Got {len(chunk.buf)} bytes from port {chunk.port}")
                worker.out.put(chunk.buf)

        time.sleep(_POLL_INTERVAL)


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Connect to the serial link and serve each virtual port over TCP."""
    argparse.ArgumentParser(
        prog="crowtty",
        description=(
            "Bridge the multiplexed serial link at "
            f"{SERIAL_ADDR[0]}:{SERIAL_ADDR[1]} to TCP ports "
            f"{BASE_PORT + PORTS[0]}-{BASE_PORT + PORTS[-1]}."
        ),
    ).parse_args(argv)
    link = socket.create_connection(SERIAL_ADDR)
    link.settimeout(_POLL_INTERVAL)
    with link:
        workers = _start_workers()
        try:
            _run(link, workers)
        except KeyboardInterrupt:
            return 130
    return 0