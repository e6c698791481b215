"""Serve a binary image, 256 bytes at a time, to a loader asking over TCP.

Requests and responses are serialized compactly (variant index and integers
as LEB128 varints, byte strings with a varint length prefix) and framed with
COBS, each frame ending in a zero byte.
"""

from __future__ import annotations

import argparse
import socket
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator, Optional, Sequence, Tuple, Union

from mnemos import cobs

CHUNK_SIZE = 256
PAD_BYTE = 0xFF
_ACCUMULATOR_SIZE = 256
_READ_TIMEOUT = 0.1
_U32_MAX = 0xFFFF_FFFF


@dataclass(frozen=True)
class SendRequest:
    """Ask for the chunk starting at ``offset``."""

    offset: int


@dataclass(frozen=True)
class DoneRequest:
    """The loader has everything it needs."""


@dataclass(frozen=True)
class BufferResponse:
    """One chunk of the image."""

    start: int
    data: bytes


@dataclass(frozen=True)
class DoneResponse:
    """The requested offset is past the end; ``length`` is the image size."""

    length: int


@dataclass(frozen=True)
class RetryResponse:
    """The last request was not understood; send it again."""


Request = Union[SendRequest, DoneRequest]
Response = Union[BufferResponse, DoneResponse, RetryResponse]


def _encode_varint(value: int) -> bytes:
    if not 0 <= value <= _U32_MAX:
        raise ValueError(f"value {value} does not fit in 32 bits")
    out = bytearray()
    while True:
        byte = value & 0x7F
        value >>= 7
        if value:
            out.append(byte | 0x80)
        else:
            out.append(byte)
            return bytes(out)


def _decode_varint(data: bytes, pos: int) -> Tuple[int, int]:
    value = 0
    for shift in range(0, 35, 7):
        if pos >= len(data):
            raise ValueError("truncated varint")
        byte = data[pos]
        pos += 1
        value |= (byte & 0x7F) << shift
        if not byte & 0x80:
            if value > _U32_MAX:
                raise ValueError("varint does not fit in 32 bits")
            return value, pos
    raise ValueError("varint is too long")


def encode_response(response: Response) -> bytes:
    """Serialize and frame ``response``, including the zero terminator."""
    if isinstance(response, BufferResponse):
        data = bytes(response.data)
        body = (
            _encode_varint(0)
            + _encode_varint(response.start)
            + _encode_varint(len(data))
            + data
        )
    elif isinstance(response, DoneResponse):
        body = _encode_varint(1) + _encode_varint(response.length)
    elif isinstance(response, RetryResponse):
        body = _encode_varint(2)
    else:
        raise TypeError(f"not a response: {response!r}")
    return cobs.encode(body) + b"\x00"


def decode_request(data: bytes) -> Request:
    """Deserialize one request from its unframed bytes."""
    data = bytes(data)
    variant, pos = _decode_varint(data, 0)
    if variant == 0:
        offset, _ = _decode_varint(data, pos)
        return SendRequest(offset)
    if variant == 1:
        return DoneRequest()
    raise ValueError(f"unknown request variant {variant}")


def pad_image(contents: bytes) -> bytes:
    """Pad ``contents`` with 0xFF up to a whole number of chunks."""
    contents = bytes(contents)
    shortfall = -len(contents) % CHUNK_SIZE
    return contents + bytes([PAD_BYTE]) * shortfall


def handle_request(contents: bytes, request: Request) -> Optional[Response]:
    """The reply to ``request``, or ``None`` once the loader is done."""
    if isinstance(request, DoneRequest):
        return None
    if request.offset < len(contents):
        chunk = bytes(contents[request.offset : request.offset + CHUNK_SIZE])
        if len(chunk) != CHUNK_SIZE:
            raise ValueError(f"image is not padded to {CHUNK_SIZE}-byte chunks")
        return BufferResponse(request.offset, chunk)
    return DoneResponse(len(contents))


class _CobsAccumulator:
    """Gathers framed requests; yields ``None`` for frames that must be retried."""

    def __init__(self, size: int = _ACCUMULATOR_SIZE) -> None:
        self._size = size
        self._buf = bytearray()

    def feed(self, data: bytes) -> Iterator[Optional[Request]]:
        data = bytes(data)
        while data:
            pos = data.find(0)
            if pos < 0:
                if len(self._buf) + len(data) > self._size:
                    self._buf.clear()
                    yield None
                else:
                    self._buf += data
                return
            take, data = data[: pos + 1], data[pos + 1 :]
            if len(self._buf) + len(take) > self._size:
                self._buf.clear()
                yield None
                continue
            self._buf += take
            frame = bytes(self._buf)
            self._buf.clear()
            try:
                request: Optional[Request] = decode_request(cobs.decode(frame))
            except ValueError:
                request = None
            yield request


def _serve(conn: socket.socket, contents: bytes) -> None:
    retry = encode_response(RetryResponse())
    acc = _CobsAccumulator()
    while True:
        try:
            data = conn.recv(_ACCUMULATOR_SIZE)
        except TimeoutError:
            conn.sendall(retry)
            continue
        if not data:
            conn.sendall(retry)
            continue
        for request in acc.feed(data):
            if request is None:
                conn.sendall(retry)
                continue
            response = handle_request(contents, request)
            if response is None:
                return
            if isinstance(response, BufferResponse):
                print(f"Sending 0x{response.start:08X}")
            conn.sendall(encode_response(response))


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Connect to the loader and serve it the image file."""
    parser = argparse.ArgumentParser(prog="dumbloader", description="Serve a binary image.")
    parser.add_argument("ip", help="address of the loader")
    parser.add_argument("port", type=int, help="TCP port of the loader")
    parser.add_argument("bin", type=Path, help="image file to send")
    args = parser.parse_args(argv)

    dest = f"{args.ip}:{args.port}"
    with socket.create_connection((args.ip, args.port)) as conn:
        print(f"Connected to '{dest}'.")
        contents = args.bin.read_bytes()
        print(f"Loaded file. {len(contents)} bytes.")
        contents = pad_image(contents)
        conn.settimeout(_READ_TIMEOUT)
        _serve(conn, contents)
    print("Done.")
    return 0