"""vlessgate - WebSocket tunnel gateway relaying framed client streams to TCP destinations."""

from vlessgate.protocol.header import TunnelRequest, decode_tunnel_request
from vlessgate.server.relay import open_relay

__version__ = "0.1.0"

__all__ = ["TunnelRequest", "__version__", "decode_tunnel_request", "open_relay"]
