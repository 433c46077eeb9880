"""Gateway error taxonomy.

Every failure a session can hit maps onto one of four families:

- ProtocolError: malformed frame, header or upgrade request
- AuthRejected: identity mismatch
- DestinationUnreachable: connect failure or destination I/O error
- AdmissionRejected: session ceiling reached, raised before a session exists
"""

from __future__ import annotations


class GatewayError(Exception):
    """Base class for all gateway errors."""

    def __init__(self, message: str = "", *, detail: str | None = None) -> None:
        self.message = message or self.__class__.__doc__ or self.__class__.__name__
        self.detail = detail
        super().__init__(self.message)


class ProtocolError(GatewayError):
    """Malformed wire data."""


class FrameError(ProtocolError):
    """Invalid WebSocket frame."""


class FragmentationUnsupported(FrameError):
    """Fragmented frames are not supported."""


class UnsupportedOpcode(FrameError):
    """Frame opcode is not supported."""

    def __init__(self, opcode: int) -> None:
        self.opcode = opcode
        super().__init__(f"Unsupported opcode: 0x{opcode:x}")


class UnmaskedFrame(FrameError):
    """Client frames must be masked."""


class TruncatedFrame(FrameError):
    """Frame ended before its declared length."""


class PayloadTooLarge(FrameError):
    """Payload does not fit a 16-bit frame length."""

    def __init__(self, size: int, limit: int) -> None:
        self.size = size
        self.limit = limit
        super().__init__(f"Payload too large: {size} bytes (max: {limit})")


class ParseError(ProtocolError):
    """Invalid tunnel header."""


class HeaderTooShort(ParseError):
    """Tunnel header is truncated."""

    def __init__(self, size: int, required: int) -> None:
        self.size = size
        self.required = required
        super().__init__(f"Tunnel header too short: {size} bytes (need {required})")


class UnsupportedAddressType(ParseError):
    """Unknown address type in tunnel header."""

    def __init__(self, address_type: int) -> None:
        self.address_type = address_type
        super().__init__(f"Unsupported address type: {address_type}")


class HandshakeError(ProtocolError):
    """Invalid upgrade request."""


class MissingKey(HandshakeError):
    """Upgrade request has no Sec-WebSocket-Key header."""


class MalformedRequest(HandshakeError):
    """Upgrade request could not be parsed."""


class AuthRejected(GatewayError):
    """Tunnel identity does not match."""


class DestinationUnreachable(GatewayError):
    """Destination connection failed."""

    def __init__(self, host: str, port: int, reason: str = "") -> None:
        self.host = host
        self.port = port
        message = f"Cannot reach {host}:{port}"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)


class AdmissionRejected(GatewayError):
    """Session ceiling reached."""

    def __init__(self, ceiling: int) -> None:
        self.ceiling = ceiling
        super().__init__(f"Session limit reached ({ceiling} active)")


def format_error_for_user(error: BaseException) -> str:
    """Render an error as a single line for CLI output."""
    if isinstance(error, GatewayError):
        text = f"{type(error).__name__}: {error.message}"
        if error.detail:
            text = f"{text} ({error.detail})"
        return text
    if isinstance(error, ConnectionRefusedError):
        return "Connection refused - is the gateway running?"
    if isinstance(error, TimeoutError):
        return "Timed out"
    return f"{type(error).__name__}: {error}"
