"""
Transport interface shared by subprocess and network providers.
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, List


class ProviderTransport(ABC):
    """
    A live channel to one provider.

    Implementations raise TransportError subclasses for channel failures and
    ApplicationError for failures the provider itself reports.
    """

    def __init__(self, provider_name: str):
        self.provider_name = provider_name

    @abstractmethod
    def connect(self) -> None:
        """Open the channel (start process / open session, handshake)."""

    @abstractmethod
    def list_tools(self) -> List[Dict[str, Any]]:
        """Return the provider's raw tool definitions."""

    @abstractmethod
    def call_tool(self, name: str, arguments: Dict[str, Any], timeout_sec: float) -> Any:
        """Invoke one operation and return the raw result envelope."""

    @abstractmethod
    def ping(self, timeout_sec: float) -> bool:
        """Liveness probe. Never raises; False means the channel is unusable."""

    @abstractmethod
    def close(self) -> None:
        """Tear the channel down. Safe to call more than once."""

    @property
    @abstractmethod
    def is_alive(self) -> bool:
        """Cheap local check (process running / session open)."""
