"""Consistent Overhead Byte Stuffing: framing that removes zero bytes.

Encoded data holds no zero byte, so a single zero can terminate a frame.
"""

from __future__ import annotations

from typing import Union

BytesLike = Union[bytes, bytearray, memoryview]

_MAX_BLOCK = 254


class CobsDecodeError(ValueError):
    """The data is not a valid COBS encoding."""


def max_encoding_length(length: int) -> int:
    """The largest encoded size of ``length`` input bytes."""
    if length < 0:
        raise ValueError(f"length must not be negative, got {length}")
    if length == 0:
        return 1
    return length + length // _MAX_BLOCK + (1 if length % _MAX_BLOCK else 0)


def encode(data: BytesLike) -> bytes:
    """Encode ``data``; the result has no zero bytes and no terminator."""
    out = bytearray()
    block = bytearray()
    just_full = False
    for byte in bytes(data):
        if byte == 0:
            out.append(len(block) + 1)
            out += block
            block.clear()
            just_full = False
        else:
            block.append(byte)
            just_full = False
            if len(block) == _MAX_BLOCK:
                out.append(0xFF)
                out += block
                block.clear()
                just_full = True
    if not just_full:
        out.append(len(block) + 1)
        out += block
    return bytes(out)


def decode(data: BytesLike) -> bytes:
    """Decode one frame; a single trailing zero terminator is allowed."""
    data = bytes(data)
    if data.endswith(b"\x00"):
        data = data[:-1]
    out = bytearray()
    pos = 0
    size = len(data)
    while pos < size:
        code = data[pos]
        if code == 0:
            raise CobsDecodeError(f"unexpected zero byte at offset {pos}")
        end = pos + code
        if end > size:
            raise CobsDecodeError(f"block at offset {pos} is truncated")
        block = data[pos + 1 : end]
        if 0 in block:
            raise CobsDecodeError(f"zero byte inside block at offset {pos}")
        out += block
        pos = end
        if code != 0xFF and pos < size:
            out.append(0)
    return bytes(out)