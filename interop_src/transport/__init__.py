"""Transports that deliver composed messages to public health endpoints."""

from ..models import Destination
from .base import Transport, TransportResponse
from .direct import DirectConfig, DirectTransport
from .https import HttpsTransport


def get_transport(destination: Destination, config=None) -> Transport:
    """Factory function - returns the transport a destination is configured for."""
    if config is None:
        from ..config import Config as config

    if destination.transport == "direct":
        return DirectTransport(config.get_direct_config())
    if destination.transport == "https":
        return HttpsTransport(timeout=config.TRANSPORT_TIMEOUT_SECONDS)
    raise ValueError(f"Unsupported transport for {destination.name}: {destination.transport}")


__all__ = [
    "DirectConfig",
    "DirectTransport",
    "HttpsTransport",
    "Transport",
    "TransportResponse",
    "get_transport",
]
