"""WebSocket data frame codec.

Wire layout (RFC 6455 subset):
    byte 0   FIN(1) RSV(3) OPCODE(4)
    byte 1   MASK(1) LEN7(7)
    [2B]     extended length, big-endian, when LEN7 == 126
    [4B]     mask key, present only when MASK is set
    payload  XOR-masked with mask_key[i % 4] when MASK is set

Only single-frame messages are accepted and lengths are capped at 16 bits;
the 64-bit extended length (LEN7 == 127) is rejected.
"""

from __future__ import annotations

import asyncio
import struct
from dataclasses import dataclass
from enum import IntEnum

from vlessgate.core.exceptions import (
    FragmentationUnsupported,
    PayloadTooLarge,
    TruncatedFrame,
    UnmaskedFrame,
    UnsupportedOpcode,
)

MAX_PAYLOAD = 0xFFFF
MAX_CONTROL_PAYLOAD = 125

_FIN = 0x80
_MASK = 0x80
_LEN16 = 126
_LEN64 = 127


class Opcode(IntEnum):
    """Frame opcodes."""

    CONTINUATION = 0x0
    TEXT = 0x1
    BINARY = 0x2
    CLOSE = 0x8
    PING = 0x9
    PONG = 0xA


DATA_OPCODES = frozenset({Opcode.TEXT, Opcode.BINARY})
CONTROL_OPCODES = frozenset({Opcode.CLOSE, Opcode.PING, Opcode.PONG})


class CloseCode(IntEnum):
    """Close status codes sent by the gateway."""

    NORMAL = 1000
    PROTOCOL_ERROR = 1002
    POLICY_VIOLATION = 1008
    INTERNAL_ERROR = 1011


@dataclass(frozen=True)
class Message:
    """A decoded data message."""

    payload: bytes
    kind: Opcode = Opcode.BINARY

    @property
    def is_text(self) -> bool:
        return self.kind == Opcode.TEXT


@dataclass(frozen=True)
class Frame:
    """A frame read off the wire, data or control."""

    opcode: Opcode
    payload: bytes

    @property
    def is_control(self) -> bool:
        return self.opcode in CONTROL_OPCODES


def _apply_mask(payload: bytes, mask_key: bytes) -> bytes:
    return bytes(b ^ mask_key[i % 4] for i, b in enumerate(payload))


def _check_opcode(raw: int, allow_control: bool) -> Opcode:
    allowed = DATA_OPCODES | CONTROL_OPCODES if allow_control else DATA_OPCODES
    if raw not in allowed:
        raise UnsupportedOpcode(raw)
    return Opcode(raw)


def _check_first_byte(b0: int, allow_control: bool) -> Opcode:
    if not b0 & _FIN:
        raise FragmentationUnsupported()
    return _check_opcode(b0 & 0x0F, allow_control)


def _check_second_byte(b1: int) -> int:
    if not b1 & _MASK:
        raise UnmaskedFrame()
    len7 = b1 & 0x7F
    if len7 == _LEN64:
        raise PayloadTooLarge(MAX_PAYLOAD + 1, MAX_PAYLOAD)
    return len7


def encode_frame(
    payload: bytes,
    kind: Opcode = Opcode.BINARY,
    mask_key: bytes | None = None,
) -> bytes:
    """Encode a single FIN frame.

    Server-to-client frames are never masked. Passing mask_key produces a
    client-direction frame, used by tests and peers speaking to a gateway.

    Raises:
        PayloadTooLarge: payload exceeds 65535 bytes (or 125 for control frames)
        UnsupportedOpcode: kind is a continuation frame
    """
    kind = _check_opcode(int(kind), allow_control=True)
    size = len(payload)
    limit = MAX_CONTROL_PAYLOAD if kind in CONTROL_OPCODES else MAX_PAYLOAD
    if size > limit:
        raise PayloadTooLarge(size, limit)

    mask_bit = 0
    if mask_key is not None:
        if len(mask_key) != 4:
            raise ValueError("mask_key must be 4 bytes")
        mask_bit = _MASK

    frame = bytearray()
    frame.append(_FIN | kind)
    if size <= 125:
        frame.append(mask_bit | size)
    else:
        frame.append(mask_bit | _LEN16)
        frame.extend(struct.pack(">H", size))

    if mask_key is not None:
        frame.extend(mask_key)
        frame.extend(_apply_mask(payload, mask_key))
    else:
        frame.extend(payload)
    return bytes(frame)


def decode_frame(data: bytes) -> Message:
    """Decode one client-to-server data frame from the start of data.

    Raises:
        FragmentationUnsupported: FIN bit not set
        UnsupportedOpcode: opcode is not text or binary
        UnmaskedFrame: mask bit not set
        PayloadTooLarge: 64-bit extended length used
        TruncatedFrame: data ends before the declared payload
    """
    if len(data) < 2:
        raise TruncatedFrame("Frame header truncated")

    kind = _check_first_byte(data[0], allow_control=False)
    length = _check_second_byte(data[1])
    offset = 2

    if length == _LEN16:
        if len(data) < offset + 2:
            raise TruncatedFrame("Extended length truncated")
        (length,) = struct.unpack(">H", data[offset : offset + 2])
        offset += 2

    if len(data) < offset + 4:
        raise TruncatedFrame("Mask key truncated")
    mask_key = data[offset : offset + 4]
    offset += 4

    if len(data) < offset + length:
        raise TruncatedFrame(f"Payload truncated: {len(data) - offset} of {length} bytes")

    return Message(payload=_apply_mask(data[offset : offset + length], mask_key), kind=kind)


async def read_frame(reader: asyncio.StreamReader) -> Frame:
    """Read exactly one client frame from a stream.

    Control frames (close, ping, pong) are returned to the caller; data
    frames follow the same rules as decode_frame.

    Raises:
        asyncio.IncompleteReadError: the stream ended mid-frame or before it
        FrameError: the frame violates the rules above
    """
    b0, b1 = await reader.readexactly(2)
    opcode = _check_first_byte(b0, allow_control=True)
    length = _check_second_byte(b1)

    if length == _LEN16:
        (length,) = struct.unpack(">H", await reader.readexactly(2))
    if opcode in CONTROL_OPCODES and length > MAX_CONTROL_PAYLOAD:
        raise PayloadTooLarge(length, MAX_CONTROL_PAYLOAD)

    mask_key = await reader.readexactly(4)
    payload = await reader.readexactly(length) if length else b""
    return Frame(opcode=opcode, payload=_apply_mask(payload, mask_key))


def encode_close(code: CloseCode = CloseCode.NORMAL, reason: str = "") -> bytes:
    """Encode a server close frame."""
    body = struct.pack(">H", code) + reason.encode("utf-8")[: MAX_CONTROL_PAYLOAD - 2]
    return encode_frame(body, Opcode.CLOSE)
