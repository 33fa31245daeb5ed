"""
Network transport for providers hosted as HTTP services.

Two protocols are supported:
- rest: ``GET /api/tools``, ``POST /api/call-tool`` with
  ``{"toolName", "arguments"}`` answered by ``{"success", "result", "error"}``,
  and ``GET /health``
- jsonrpc: JSON-RPC 2.0 requests POSTed to the base URL
"""

import itertools
import logging
from typing import Any, Dict, List, Optional

import httpx

from .base import ProviderTransport
from ..exceptions import ApplicationError, TransportError, TransportTimeout
from ..providers.types import NetworkLaunch, NetworkProtocol


logger = logging.getLogger(__name__)

USER_AGENT = "toolflow-http-adapter/0.1"


class HttpTransport(ProviderTransport):
    """httpx-backed client for a network provider."""

    def __init__(
        self,
        provider_name: str,
        launch: NetworkLaunch,
        http_transport: Optional[httpx.BaseTransport] = None,
    ):
        super().__init__(provider_name)
        self.launch = launch
        self._http_transport = http_transport
        self._client: Optional[httpx.Client] = None
        self._ids = itertools.count(1)

    def connect(self) -> None:
        headers = {"User-Agent": USER_AGENT}
        headers.update({k: v for k, v in self.launch.headers.items() if v})
        self._client = httpx.Client(
            base_url=self.launch.base_url,
            timeout=httpx.Timeout(self.launch.timeout_sec),
            headers=headers,
            transport=self._http_transport,
        )
        if self.launch.protocol == NetworkProtocol.JSONRPC:
            self._rpc("initialize", {
                "protocolVersion": "2024-11-05",
                "capabilities": {"tools": {}},
                "clientInfo": {"name": "toolflow", "version": "0.1.0"},
            }, self.launch.timeout_sec)

    def _send(self, method: str, path: str, timeout_sec: float, payload: Optional[Dict[str, Any]] = None) -> Any:
        if self._client is None:
            raise TransportError(f"Provider '{self.provider_name}' session is closed",
                                 {"provider": self.provider_name})
        try:
            response = self._client.request(method, path, json=payload, timeout=timeout_sec)
        except httpx.TimeoutException as e:
            raise TransportTimeout(
                f"Provider '{self.provider_name}' timed out on {method} {path}",
                {"provider": self.provider_name, "path": path, "timeout_sec": timeout_sec},
            ) from e
        except httpx.TransportError as e:
            raise TransportError(
                f"Provider '{self.provider_name}' unreachable: {e}",
                {"provider": self.provider_name, "path": path},
            ) from e

        if response.status_code >= 500:
            raise TransportError(
                f"HTTP {response.status_code} from provider '{self.provider_name}'",
                {"provider": self.provider_name, "path": path, "status_code": response.status_code},
            )
        if response.status_code >= 400:
            raise ApplicationError(
                f"HTTP {response.status_code}: {response.text[:500]}",
                {"provider": self.provider_name, "path": path, "status_code": response.status_code},
            )

        try:
            return response.json()
        except ValueError:
            return response.text

    def _rpc(self, method: str, params: Dict[str, Any], timeout_sec: float) -> Any:
        payload = {"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": params}
        data = self._send("POST", "", timeout_sec, payload)
        if isinstance(data, dict) and data.get("error"):
            error = data["error"]
            message = error.get("message") if isinstance(error, dict) else str(error)
            raise ApplicationError(
                f"Provider '{self.provider_name}' rejected '{method}': {message}",
                {"provider": self.provider_name, "method": method, "error": error},
            )
        if not isinstance(data, dict) or "result" not in data:
            raise ApplicationError(
                f"Provider '{self.provider_name}' response missing result",
                {"provider": self.provider_name, "method": method},
            )
        return data["result"]

    def list_tools(self) -> List[Dict[str, Any]]:
        if self.launch.protocol == NetworkProtocol.JSONRPC:
            result = self._rpc("tools/list", {}, self.launch.timeout_sec) or {}
            return result.get("tools", [])

        data = self._send("GET", "/api/tools", self.launch.timeout_sec)
        if isinstance(data, dict):
            return data.get("tools", [])
        return data if isinstance(data, list) else []

    def call_tool(self, name: str, arguments: Dict[str, Any], timeout_sec: float) -> Any:
        if self.launch.protocol == NetworkProtocol.JSONRPC:
            return self._rpc("tools/call", {"name": name, "arguments": arguments}, timeout_sec)

        data = self._send("POST", "/api/call-tool", timeout_sec, {"toolName": name, "arguments": arguments})
        if isinstance(data, dict) and "success" in data:
            if data["success"]:
                return data.get("result")
            raise ApplicationError(
                data.get("error") or "Tool call failed",
                {"provider": self.provider_name, "operation": name},
            )
        return data

    def ping(self, timeout_sec: float) -> bool:
        try:
            if self.launch.protocol == NetworkProtocol.JSONRPC:
                self._rpc("ping", {}, timeout_sec)
            else:
                self._send("GET", "/health", timeout_sec)
            return True
        except ApplicationError:
            # The service answered; it just has no health route
            return True
        except TransportError as e:
            logger.warning(f"Health check failed for '{self.provider_name}': {e}")
            return False

    def close(self) -> None:
        if self._client is not None:
            self._client.close()
            self._client = None

    @property
    def is_alive(self) -> bool:
        return self._client is not None
