"""
Provider transports for toolflow.

Subprocess providers speak JSON-RPC over stdio; network providers are
reached over HTTP.
"""

from typing import Optional

import httpx

from .base import ProviderTransport
from .stdio import SubprocessTransport
from .http import HttpTransport
from ..providers.types import LaunchSpec, NetworkLaunch, SubprocessLaunch


def create_transport(
    provider_name: str,
    launch: LaunchSpec,
    connect_timeout_sec: float = 30.0,
    http_transport: Optional[httpx.BaseTransport] = None,
) -> ProviderTransport:
    """Build the transport matching a resolved launch specification."""
    if isinstance(launch, SubprocessLaunch):
        return SubprocessTransport(provider_name, launch, connect_timeout_sec)
    if isinstance(launch, NetworkLaunch):
        return HttpTransport(provider_name, launch, http_transport)
    raise ValueError(f"Unsupported launch specification for '{provider_name}': {type(launch).__name__}")


__all__ = [
    "ProviderTransport",
    "SubprocessTransport",
    "HttpTransport",
    "create_transport",
]
