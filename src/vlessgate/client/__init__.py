"""Local forwarding client."""

from vlessgate.client.tunnel import ConnectionState, TunnelClient

__all__ = ["ConnectionState", "TunnelClient"]
