"""Core."""

from .config import ClientConfig, GatewayConfig, load_config_from_file
from .exceptions import (
    AdmissionRejected,
    AuthRejected,
    DestinationUnreachable,
    FragmentationUnsupported,
    FrameError,
    GatewayError,
    HandshakeError,
    HeaderTooShort,
    MalformedRequest,
    MissingKey,
    ParseError,
    PayloadTooLarge,
    ProtocolError,
    TruncatedFrame,
    UnmaskedFrame,
    UnsupportedAddressType,
    UnsupportedOpcode,
    format_error_for_user,
)

__all__ = [
    # Config
    "ClientConfig",
    "GatewayConfig",
    "load_config_from_file",
    # Errors
    "GatewayError",
    "ProtocolError",
    "FrameError",
    "FragmentationUnsupported",
    "UnsupportedOpcode",
    "UnmaskedFrame",
    "TruncatedFrame",
    "PayloadTooLarge",
    "ParseError",
    "HeaderTooShort",
    "UnsupportedAddressType",
    "HandshakeError",
    "MissingKey",
    "MalformedRequest",
    "AuthRejected",
    "DestinationUnreachable",
    "AdmissionRejected",
    "format_error_for_user",
]
