"""
Transport adapters for submitting transition jobs.

Two strategies share one interface:
- DirectTransport drives an authenticated generation client in-process
- ProxiedTransport goes through the backend's generate/progress endpoints
"""

from typing import Optional

from .base import TransportAdapter, TransportError
from .direct import DEFAULT_TIMEOUT_SEC, DirectTransport, GenerationClient
from .proxied import BackendApiClient, ProxiedTransport


def select_transport(
    direct_client: Optional[GenerationClient],
    backend: BackendApiClient,
    timeout_sec: float = DEFAULT_TIMEOUT_SEC,
) -> TransportAdapter:
    if direct_client is not None and getattr(direct_client, "is_authenticated", False):
        return DirectTransport(direct_client, timeout_sec=timeout_sec)
    return ProxiedTransport(backend)


__all__ = [
    "BackendApiClient",
    "DirectTransport",
    "GenerationClient",
    "ProxiedTransport",
    "TransportAdapter",
    "TransportError",
    "select_transport",
]
