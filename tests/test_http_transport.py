"""Tests for the httpx-backed network transport."""

import json

import httpx
import pytest

from toolflow.exceptions import ApplicationError, TransportError, TransportTimeout
from toolflow.providers.types import NetworkLaunch, NetworkProtocol
from toolflow.transport import HttpTransport, create_transport


def rest_handler(request: httpx.Request) -> httpx.Response:
    if request.url.path == "/api/tools":
        return httpx.Response(200, json={"tools": [{"name": "get_price", "inputSchema": {}}]})
    if request.url.path == "/api/call-tool":
        body = json.loads(request.content)
        if body["toolName"] == "get_price":
            return httpx.Response(200, json={"success": True, "result": {"price": 42}})
        return httpx.Response(200, json={"success": False, "error": "no such tool"})
    if request.url.path == "/health":
        return httpx.Response(200, json={"status": "ok"})
    return httpx.Response(404, text="not found")


class TestRestProtocol:
    """REST adapter: /api/tools, /api/call-tool, /health."""

    def make(self, handler=rest_handler, **launch_kwargs):
        launch = NetworkLaunch(base_url="http://provider.test", **launch_kwargs)
        transport = HttpTransport("prices", launch, httpx.MockTransport(handler))
        transport.connect()
        return transport

    def test_list_and_call(self):
        t = self.make()
        assert [tool["name"] for tool in t.list_tools()] == ["get_price"]
        assert t.call_tool("get_price", {"symbol": "BTC"}, timeout_sec=5) == {"price": 42}
        t.close()

    def test_unsuccessful_call_is_application_error(self):
        t = self.make()
        with pytest.raises(ApplicationError, match="no such tool"):
            t.call_tool("other", {}, timeout_sec=5)

    def test_headers_are_sent_and_empty_slots_skipped(self):
        seen = {}

        def handler(request):
            seen.update(request.headers)
            return rest_handler(request)

        t = self.make(handler, headers={"X-Api-Key": "k-1", "X-Empty": ""})
        t.list_tools()
        assert seen["x-api-key"] == "k-1"
        assert "x-empty" not in seen
        assert seen["user-agent"].startswith("toolflow-http-adapter")

    def test_server_error_is_transport_error(self):
        t = self.make(lambda request: httpx.Response(503, text="busy"))
        with pytest.raises(TransportError) as exc_info:
            t.list_tools()
        assert exc_info.value.context["status_code"] == 503

    def test_client_error_is_application_error(self):
        t = self.make(lambda request: httpx.Response(401, text="unauthorized"))
        with pytest.raises(ApplicationError):
            t.call_tool("get_price", {}, timeout_sec=5)

    def test_timeout_maps_to_transport_timeout(self):
        def handler(request):
            raise httpx.ReadTimeout("slow", request=request)

        t = self.make(handler)
        with pytest.raises(TransportTimeout):
            t.call_tool("get_price", {}, timeout_sec=1)

    def test_connection_failure_maps_to_transport_error(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        t = self.make(handler)
        with pytest.raises(TransportError):
            t.list_tools()
        assert t.ping(timeout_sec=1) is False

    def test_ping_tolerates_missing_health_route(self):
        t = self.make(lambda request: httpx.Response(404, text="no route"))
        assert t.ping(timeout_sec=1) is True

    def test_closed_session(self):
        t = self.make()
        t.close()
        assert not t.is_alive
        with pytest.raises(TransportError):
            t.list_tools()


class TestJsonRpcProtocol:
    """JSON-RPC 2.0 posted to the base URL."""

    def setup_method(self):
        self.methods = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        self.methods.append(body["method"])
        if body["method"] == "initialize":
            result = {"capabilities": {}}
        elif body["method"] == "tools/list":
            result = {"tools": [{"name": "search"}]}
        elif body["method"] == "tools/call":
            if body["params"]["name"] != "search":
                return httpx.Response(200, json={"jsonrpc": "2.0", "id": body["id"],
                                                 "error": {"code": -32602, "message": "bad tool"}})
            result = {"content": [{"type": "text", "text": "found"}]}
        else:
            result = {}
        return httpx.Response(200, json={"jsonrpc": "2.0", "id": body["id"], "result": result})

    def make(self):
        launch = NetworkLaunch(base_url="http://rpc.test", protocol=NetworkProtocol.JSONRPC)
        transport = create_transport("rpc", launch, http_transport=httpx.MockTransport(self.handler))
        transport.connect()
        return transport

    def test_handshake_then_calls(self):
        t = self.make()
        assert t.list_tools() == [{"name": "search"}]
        assert t.call_tool("search", {"q": "x"}, timeout_sec=5)["content"][0]["text"] == "found"
        assert self.methods == ["initialize", "tools/list", "tools/call"]

    def test_rpc_error_is_application_error(self):
        t = self.make()
        with pytest.raises(ApplicationError, match="bad tool"):
            t.call_tool("other", {}, timeout_sec=5)

    def test_ping_uses_rpc(self):
        t = self.make()
        assert t.ping(timeout_sec=1) is True
        assert self.methods[-1] == "ping"
