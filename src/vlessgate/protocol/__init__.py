"""Wire protocol: WebSocket framing, upgrade handshake and tunnel header."""

from vlessgate.protocol.frames import (
    MAX_PAYLOAD,
    CloseCode,
    Frame,
    Message,
    Opcode,
    decode_frame,
    encode_close,
    encode_frame,
    read_frame,
)
from vlessgate.protocol.handshake import (
    WEBSOCKET_MAGIC,
    UpgradeRequest,
    build_switch_response,
    compute_accept,
    parse_request_head,
)
from vlessgate.protocol.header import (
    MIN_HEADER_SIZE,
    AddressType,
    Command,
    TunnelRequest,
    decode_tunnel_request,
    encode_tunnel_request,
)

__all__ = [
    # Frames
    "MAX_PAYLOAD",
    "CloseCode",
    "Frame",
    "Message",
    "Opcode",
    "decode_frame",
    "encode_close",
    "encode_frame",
    "read_frame",
    # Handshake
    "WEBSOCKET_MAGIC",
    "UpgradeRequest",
    "build_switch_response",
    "compute_accept",
    "parse_request_head",
    # Tunnel header
    "MIN_HEADER_SIZE",
    "AddressType",
    "Command",
    "TunnelRequest",
    "decode_tunnel_request",
    "encode_tunnel_request",
]
