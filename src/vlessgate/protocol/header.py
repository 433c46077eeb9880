"""Tunnel request header.

Wire format (binary, big-endian):
┌─────────┬──────────────┬─────────┬─────────┬──────────┬───────────┬──────────┬─────────────┐
│ Ver (1B)│ Identity(16B)│ Opt (1B)│ Cmd (1B)│ ATYP (1B)│ Addr (var)│ Port (2B)│ Payload(var)│
└─────────┴──────────────┴─────────┴─────────┴──────────┴───────────┴──────────┴─────────────┘

ATYP 1: IPv4, 4 raw bytes
ATYP 3: domain, 1 length byte + that many UTF-8 bytes
ATYP 4: IPv6, 16 raw bytes

Version, options length and command are carried through but not acted on.
"""

from __future__ import annotations

import ipaddress
import struct
from dataclasses import dataclass
from enum import IntEnum

from vlessgate.core.exceptions import HeaderTooShort, ParseError, UnsupportedAddressType

MIN_HEADER_SIZE = 24

_FIXED_SIZE = 20
_VERSION = 0
_IDENTITY = slice(1, 17)
_OPTIONS = 17
_COMMAND = 18
_ADDRESS_TYPE = 19


class AddressType(IntEnum):
    """Destination address encodings."""

    IPV4 = 1
    DOMAIN = 3
    IPV6 = 4


class Command(IntEnum):
    """Tunnel commands. Only TCP is relayed."""

    TCP = 1
    UDP = 2
    MUX = 3


@dataclass(frozen=True)
class TunnelRequest:
    """Decoded tunnel header."""

    identity: bytes
    host: str
    port: int
    payload: bytes = b""
    address_type: AddressType = AddressType.IPV4
    version: int = 0
    command: int = Command.TCP

    @property
    def destination(self) -> str:
        if self.address_type == AddressType.IPV6:
            return f"[{self.host}]:{self.port}"
        return f"{self.host}:{self.port}"


def _format_ipv6(raw: bytes) -> str:
    return ":".join(f"{group:04x}" for group in struct.unpack(">8H", raw))


def decode_tunnel_request(data: bytes) -> TunnelRequest:
    """Decode the leading tunnel header from the first client message.

    Everything after the port is returned untouched as the initial payload.

    Raises:
        HeaderTooShort: fewer than 24 bytes, or the address/port is truncated
        UnsupportedAddressType: address type is not 1, 3 or 4
        ParseError: domain bytes are not valid UTF-8
    """
    size = len(data)
    if size < MIN_HEADER_SIZE:
        raise HeaderTooShort(size, MIN_HEADER_SIZE)

    try:
        address_type = AddressType(data[_ADDRESS_TYPE])
    except ValueError:
        raise UnsupportedAddressType(data[_ADDRESS_TYPE]) from None

    offset = _FIXED_SIZE
    if address_type == AddressType.IPV4:
        end = offset + 4
        host = ".".join(str(b) for b in data[offset:end])
    elif address_type == AddressType.IPV6:
        end = offset + 16
        if size < end:
            raise HeaderTooShort(size, end + 2)
        host = _format_ipv6(data[offset:end])
    else:
        length = data[offset]
        offset += 1
        end = offset + length
        if size < end:
            raise HeaderTooShort(size, end + 2)
        try:
            host = data[offset:end].decode("utf-8")
        except UnicodeDecodeError as e:
            raise ParseError("Domain is not valid UTF-8") from e

    if size < end + 2:
        raise HeaderTooShort(size, end + 2)
    (port,) = struct.unpack(">H", data[end : end + 2])

    return TunnelRequest(
        identity=bytes(data[_IDENTITY]),
        host=host,
        port=port,
        payload=bytes(data[end + 2 :]),
        address_type=address_type,
        version=data[_VERSION],
        command=data[_COMMAND],
    )


def encode_tunnel_request(
    identity: bytes,
    host: str,
    port: int,
    payload: bytes = b"",
    command: int = Command.TCP,
    version: int = 0,
) -> bytes:
    """Build a tunnel header for host:port followed by payload.

    The address type is chosen from the host text: IPv4 and IPv6 literals
    use their raw encodings, anything else is sent as a domain.
    """
    if len(identity) != 16:
        raise ValueError("identity must be 16 bytes")
    if not 0 <= port <= 0xFFFF:
        raise ValueError(f"port out of range: {port}")

    header = bytearray()
    header.append(version)
    header.extend(identity)
    header.append(0)
    header.append(command)

    try:
        address = ipaddress.ip_address(host.strip("[]"))
    except ValueError:
        encoded = host.encode("utf-8")
        if not encoded or len(encoded) > 255:
            raise ValueError(f"domain length must be 1-255 bytes: {host!r}") from None
        header.append(AddressType.DOMAIN)
        header.append(len(encoded))
        header.extend(encoded)
    else:
        if address.version == 4:
            header.append(AddressType.IPV4)
        else:
            header.append(AddressType.IPV6)
        header.extend(address.packed)

    header.extend(struct.pack(">H", port))
    header.extend(payload)
    return bytes(header)
