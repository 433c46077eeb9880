"""WebSocket upgrade negotiation.

The gateway supports exactly one response shape: 101 with the computed
accept token. No extensions or subprotocols are negotiated.
"""

from __future__ import annotations

import base64
import hashlib
from dataclasses import dataclass, field

from vlessgate.core.exceptions import MalformedRequest, MissingKey

WEBSOCKET_MAGIC = "258EAFA5-E914-47DA-95CA-C5AB0DC85B11"

SWITCH_TEMPLATE = (
    "HTTP/1.1 101 Switching Protocols\r\n"
    "Upgrade: websocket\r\n"
    "Connection: Upgrade\r\n"
    "Sec-WebSocket-Accept: {token}\r\n"
    "\r\n"
)


@dataclass
class UpgradeRequest:
    """Parsed HTTP request head."""

    method: str
    target: str
    version: str
    headers: dict[str, str] = field(default_factory=dict)

    @property
    def path(self) -> str:
        return self.target.split("?", 1)[0]

    def header(self, name: str, default: str | None = None) -> str | None:
        return self.headers.get(name.lower(), default)

    @property
    def is_websocket_upgrade(self) -> bool:
        upgrade = (self.header("upgrade") or "").lower()
        connection = (self.header("connection") or "").lower()
        tokens = {token.strip() for token in connection.split(",")}
        return upgrade == "websocket" and "upgrade" in tokens

    @property
    def websocket_key(self) -> str | None:
        key = self.header("sec-websocket-key")
        return key.strip() if key else None


def parse_request_head(data: bytes) -> UpgradeRequest:
    """Parse an HTTP/1.1 request head (request line plus headers).

    Header names are lower-cased; repeated headers are joined with ", ".

    Raises:
        MalformedRequest: the head is not a valid HTTP/1.x request
    """
    lines = data.decode("latin-1").split("\r\n")
    parts = lines[0].split(" ")
    if len(parts) != 3 or not parts[2].startswith("HTTP/1."):
        raise MalformedRequest(f"Bad request line: {lines[0][:80]!r}")
    method, target, version = parts

    headers: dict[str, str] = {}
    for line in lines[1:]:
        if not line:
            continue
        name, sep, value = line.partition(":")
        if not sep or not name or name != name.strip():
            raise MalformedRequest(f"Bad header line: {line[:80]!r}")
        key = name.lower()
        value = value.strip()
        if key in headers:
            headers[key] = f"{headers[key]}, {value}"
        else:
            headers[key] = value

    return UpgradeRequest(method=method, target=target, version=version, headers=headers)


def compute_accept(key: str | None) -> str:
    """Compute the Sec-WebSocket-Accept token for a client key.

    Raises:
        MissingKey: key is absent or empty
    """
    if not key:
        raise MissingKey()
    digest = hashlib.sha1((key + WEBSOCKET_MAGIC).encode("latin-1")).digest()
    return base64.b64encode(digest).decode("ascii")


def build_switch_response(key: str | None) -> bytes:
    """Build the 101 Switching Protocols response for a client key."""
    return SWITCH_TEMPLATE.format(token=compute_accept(key)).encode("ascii")
