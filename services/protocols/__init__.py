"""Protocol directory interface and the static implementation."""

from .directory import (
    DEFAULT_PROTOCOL_RISK,
    ProtocolDirectory,
    ProtocolHealth,
    ProtocolUnavailableError,
    StaticProtocolDirectory,
)

__all__ = [
    "DEFAULT_PROTOCOL_RISK",
    "ProtocolDirectory",
    "ProtocolHealth",
    "ProtocolUnavailableError",
    "StaticProtocolDirectory",
]
