"""Gateway server: upgrade handling, relay sessions and plain HTTP pages."""

from vlessgate.server.gateway import GatewayServer
from vlessgate.server.relay import (
    ClientChannel,
    CloseReason,
    RelaySession,
    SessionState,
    WebSocketChannel,
    open_relay,
)

__all__ = [
    "ClientChannel",
    "CloseReason",
    "GatewayServer",
    "RelaySession",
    "SessionState",
    "WebSocketChannel",
    "open_relay",
]
