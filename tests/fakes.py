"""In-memory provider transports used across the test suite."""

import threading
from typing import Any, Callable, Dict, List, Optional

from toolflow.exceptions import ApplicationError, TransportError
from toolflow.providers.types import LaunchSpec
from toolflow.transport.base import ProviderTransport


def text_result(text: str) -> Dict[str, Any]:
    return {"content": [{"type": "text", "text": text}]}


def tool(name: str, description: str = "", properties: Optional[Dict[str, Any]] = None,
         required: Optional[List[str]] = None, **schema_extra) -> Dict[str, Any]:
    """Tool definition in the shape providers list them."""
    input_schema: Dict[str, Any] = {"type": "object", "properties": properties or {}}
    if required:
        input_schema["required"] = required
    input_schema.update(schema_extra)
    return {"name": name, "description": description, "inputSchema": input_schema}


class FakeTransport(ProviderTransport):
    """
    Scriptable transport.

    ``handlers`` maps operation names to a value or a callable taking the
    arguments. ``failures`` is consumed one exception per call before the
    handler runs.
    """

    def __init__(self, provider_name: str, launch: Optional[LaunchSpec] = None,
                 tools: Optional[List[Dict[str, Any]]] = None,
                 handlers: Optional[Dict[str, Any]] = None):
        super().__init__(provider_name)
        self.launch = launch
        self.tools = list(tools or [])
        self.handlers = dict(handlers or {})
        self.failures: List[Exception] = []
        self.calls: List[tuple] = []
        self.list_calls = 0
        self.connect_calls = 0
        self.connect_error: Optional[Exception] = None
        self.ping_ok = True
        self.closed = False
        self._open = False

    def connect(self) -> None:
        self.connect_calls += 1
        if self.connect_error is not None:
            raise self.connect_error
        self._open = True

    def list_tools(self) -> List[Dict[str, Any]]:
        self.list_calls += 1
        return list(self.tools)

    def call_tool(self, name: str, arguments: Dict[str, Any], timeout_sec: float) -> Any:
        self.calls.append((name, arguments))
        if self.failures:
            raise self.failures.pop(0)
        if name not in self.handlers:
            raise ApplicationError(f"Unknown tool: {name}")
        handler = self.handlers[name]
        return handler(arguments) if callable(handler) else handler

    def ping(self, timeout_sec: float) -> bool:
        return self._open and self.ping_ok

    def close(self) -> None:
        self.closed = True
        self._open = False

    @property
    def is_alive(self) -> bool:
        return self._open


class FakeTransportFactory:
    """
    Transport factory handing out FakeTransports.

    ``configure`` registers a callback run on every transport created for a
    provider, so reconnects get the same tools and handlers.
    """

    def __init__(self):
        self.created: List[FakeTransport] = []
        self._setups: Dict[str, Callable[[FakeTransport], None]] = {}
        self._lock = threading.Lock()
        self.delay: Optional[threading.Event] = None

    def configure(self, provider_name: str, tools: Optional[List[Dict[str, Any]]] = None,
                  handlers: Optional[Dict[str, Any]] = None,
                  setup: Optional[Callable[[FakeTransport], None]] = None) -> None:
        def _setup(transport: FakeTransport) -> None:
            transport.tools = list(tools or [])
            transport.handlers = dict(handlers or {})
            if setup is not None:
                setup(transport)
        self._setups[provider_name] = _setup

    def __call__(self, provider_name: str, launch: LaunchSpec) -> FakeTransport:
        if self.delay is not None:
            self.delay.wait(timeout=5)
        transport = FakeTransport(provider_name, launch)
        setup = self._setups.get(provider_name)
        if setup is not None:
            setup(transport)
        with self._lock:
            self.created.append(transport)
        return transport

    def for_provider(self, provider_name: str) -> List[FakeTransport]:
        return [t for t in self.created if t.provider_name == provider_name]

    def latest(self, provider_name: str) -> FakeTransport:
        return self.for_provider(provider_name)[-1]


def broken_pipe(message: str = "connection reset") -> TransportError:
    return TransportError(message)
