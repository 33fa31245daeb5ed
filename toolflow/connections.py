"""
Connection manager for tool providers.

Owns every live provider connection, keeps them warm across steps and
workflows, probes liveness on acquisition and wraps remote calls with the
retry policy. Acquisition is single-flight per provider name: concurrent
callers share one establishment sequence and its outcome.
"""

import hashlib
import itertools
import json
import logging
import threading
from concurrent.futures import Future, wait
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple, TypeVar

from .exec.retry import RetryPolicy
from .exceptions import ApplicationError, ConnectionFailedError, ToolflowError, TransportError
from .providers.types import LaunchSpec, NetworkLaunch
from .transport import ProviderTransport, create_transport


logger = logging.getLogger(__name__)

T = TypeVar("T")


class ConnectionState(str, Enum):
    """Per-provider connection lifecycle."""
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DEGRADED = "degraded"


@dataclass(frozen=True)
class ConnectionHandle:
    """
    Reference to a provider connection as returned by acquire.

    Attributes:
        provider_name: Canonical provider name
        generation: Connection generation (changes on every reconnect)
        launch: Resolved launch parameters used to establish the connection
    """
    provider_name: str
    generation: int
    launch: LaunchSpec

    @property
    def retries(self) -> Optional[int]:
        if isinstance(self.launch, NetworkLaunch):
            return self.launch.retries
        return None


@dataclass
class ProviderConnection:
    """Mutable runtime record of one live connection."""
    provider_name: str
    transport: ProviderTransport
    launch: LaunchSpec
    fingerprint: str
    generation: int
    state: ConnectionState = ConnectionState.CONNECTING
    last_error: Optional[str] = None
    connected_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    def handle(self) -> ConnectionHandle:
        return ConnectionHandle(self.provider_name, self.generation, self.launch)


def launch_fingerprint(launch: LaunchSpec) -> str:
    """Stable digest of launch parameters (credentials included, never stored)."""
    payload = json.dumps(
        {"kind": type(launch).__name__, **asdict(launch)}, sort_keys=True, default=str
    )
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


TransportFactory = Callable[[str, LaunchSpec], ProviderTransport]


class ConnectionManager:
    """
    Manages provider connections.

    State machine per provider:
    DISCONNECTED -> CONNECTING -> CONNECTED -> (DEGRADED -> CONNECTING | DISCONNECTED)
    """

    def __init__(
        self,
        retry_policy: Optional[RetryPolicy] = None,
        call_timeout_sec: float = 60.0,
        connect_timeout_sec: float = 30.0,
        probe_timeout_sec: float = 10.0,
        transport_factory: Optional[TransportFactory] = None,
    ):
        """
        Initialize connection manager.

        Args:
            retry_policy: Backoff policy for remote calls (default: 3 attempts)
            call_timeout_sec: Per-call timeout for tool invocations
            connect_timeout_sec: Timeout for handshakes and discovery
            probe_timeout_sec: Timeout for liveness probes
            transport_factory: Builds a transport from (provider_name, launch)
        """
        self.retry_policy = retry_policy or RetryPolicy()
        self.call_timeout_sec = call_timeout_sec
        self.connect_timeout_sec = connect_timeout_sec
        self.probe_timeout_sec = probe_timeout_sec
        self._transport_factory = transport_factory or (
            lambda name, launch: create_transport(name, launch, connect_timeout_sec)
        )

        self._lock = threading.Lock()
        self._connections: Dict[str, ProviderConnection] = {}
        self._states: Dict[str, ConnectionState] = {}
        self._inflight: Dict[str, Tuple[str, "Future[ProviderConnection]"]] = {}
        self._generations = itertools.count(1)
        self._stats: Dict[str, Dict[str, int]] = {}

    # Acquisition

    def acquire(self, provider_name: str, launch: LaunchSpec) -> ConnectionHandle:
        """
        Return a live connection handle, creating or repairing it if needed.

        Args:
            provider_name: Canonical provider name
            launch: Launch parameters (with injected credentials)

        Returns:
            Handle to the live connection

        Raises:
            ConnectionFailedError: If no connection could be established
        """
        return self._acquire_connection(provider_name, launch).handle()

    def _acquire_connection(self, provider_name: str, launch: LaunchSpec) -> ProviderConnection:
        """
        Single-flight acquisition.

        Callers whose launch parameters match the in-flight acquisition share
        its outcome. Callers with other parameters (another user's
        credentials) wait for it to finish and then acquire for themselves.
        """
        fingerprint = launch_fingerprint(launch)
        while True:
            with self._lock:
                inflight = self._inflight.get(provider_name)
                if inflight is None:
                    future: "Future[ProviderConnection]" = Future()
                    self._inflight[provider_name] = (fingerprint, future)
                    break

            inflight_fingerprint, inflight_future = inflight
            if inflight_fingerprint == fingerprint:
                logger.debug(f"Waiting for in-flight acquisition of '{provider_name}'")
                return inflight_future.result()
            logger.debug(f"Acquisition of '{provider_name}' in flight with other launch parameters, queueing")
            wait([inflight_future])

        try:
            connection = self._acquire_serialized(provider_name, launch, fingerprint)
        except BaseException as e:
            with self._lock:
                self._inflight.pop(provider_name, None)
            future.set_exception(e)
            raise

        with self._lock:
            self._inflight.pop(provider_name, None)
        future.set_result(connection)
        return connection

    def _acquire_serialized(self, provider_name: str, launch: LaunchSpec,
                            fingerprint: str) -> ProviderConnection:
        with self._lock:
            connection = self._connections.get(provider_name)

        if connection is not None:
            if connection.fingerprint != fingerprint:
                logger.info(f"Launch parameters for '{provider_name}' changed, reconnecting")
                self._teardown(provider_name, ConnectionState.DISCONNECTED)
            elif connection.transport.ping(self.probe_timeout_sec):
                self._set_state(connection, ConnectionState.CONNECTED)
                return connection
            else:
                connection.last_error = "liveness probe failed"
                self._set_state(connection, ConnectionState.DEGRADED)
                logger.warning(f"Provider '{provider_name}' degraded, attempting one reconnect")
                self._teardown(provider_name, ConnectionState.DEGRADED)

        return self._establish(provider_name, launch, fingerprint)

    def _establish(self, provider_name: str, launch: LaunchSpec, fingerprint: str) -> ProviderConnection:
        with self._lock:
            self._states[provider_name] = ConnectionState.CONNECTING

        transport = self._transport_factory(provider_name, launch)
        try:
            transport.connect()
        except (ToolflowError, OSError) as e:
            transport.close()
            with self._lock:
                self._states[provider_name] = ConnectionState.DISCONNECTED
            self._count(provider_name, "connect_failures")
            logger.error(f"Failed to connect to provider '{provider_name}': {e}")
            raise ConnectionFailedError(
                f"Failed to connect to provider '{provider_name}': {e}",
                {"provider": provider_name, "cause": getattr(e, "context", {})},
            ) from e

        connection = ProviderConnection(
            provider_name=provider_name,
            transport=transport,
            launch=launch,
            fingerprint=fingerprint,
            generation=next(self._generations),
            state=ConnectionState.CONNECTED,
        )
        with self._lock:
            self._connections[provider_name] = connection
            self._states[provider_name] = ConnectionState.CONNECTED
        self._count(provider_name, "connects")

        logger.info(f"Connected to provider '{provider_name}' (generation {connection.generation})")
        return connection

    def _teardown(self, provider_name: str, final_state: ConnectionState) -> None:
        with self._lock:
            connection = self._connections.pop(provider_name, None)
            self._states[provider_name] = final_state
        if connection is not None:
            try:
                connection.transport.close()
            except OSError as e:
                logger.warning(f"Error closing provider '{provider_name}': {e}")

    def _set_state(self, connection: ProviderConnection, state: ConnectionState) -> None:
        with self._lock:
            connection.state = state
            self._states[connection.provider_name] = state

    # Calls

    def call(self, handle: ConnectionHandle, operation: str, args: Dict[str, Any]) -> Any:
        """
        Invoke an operation with retry on transport failures.

        Args:
            handle: Handle returned by acquire
            operation: Exact operation name
            args: Validated arguments

        Returns:
            Raw result envelope from the provider

        Raises:
            TransportError: After the retry budget is exhausted
            ApplicationError: Immediately, when the provider reports a failure
        """
        logger.debug(f"Calling {handle.provider_name}.{operation} with {args}")
        return self._with_retries(
            handle,
            operation,
            lambda transport: transport.call_tool(operation, args, self.call_timeout_sec),
        )

    def list_operations(self, handle: ConnectionHandle) -> List[Dict[str, Any]]:
        """Raw discovery round-trip (tool definitions as the provider lists them)."""
        return self._with_retries(handle, "tools/list", lambda transport: transport.list_tools())

    def _with_retries(
        self,
        handle: ConnectionHandle,
        label: str,
        action: Callable[[ProviderTransport], T],
    ) -> T:
        policy = RetryPolicy.for_provider(handle.retries, self.retry_policy)
        name = handle.provider_name
        attempt = 0

        while True:
            attempt += 1
            try:
                transport = self._live_transport(handle)
                result = action(transport)
                self._count(name, "requests")
                return result
            except TransportError as e:
                self._count(name, "errors")
                self._mark_degraded(name, str(e))
                if not policy.should_retry(e, attempt):
                    logger.error(
                        f"{name}.{label} failed after {attempt} attempt(s): {e}"
                    )
                    raise
                delay = policy.delay_for(attempt)
                logger.warning(
                    f"{name}.{label} attempt {attempt}/{policy.max_attempts} failed: {e}; "
                    f"retrying in {delay:.1f}s"
                )
                policy.wait(attempt)
            except ApplicationError:
                self._count(name, "errors")
                raise

    def _live_transport(self, handle: ConnectionHandle) -> ProviderTransport:
        """
        Transport launched with the handle's parameters, reconnecting if it broke.

        A connection relaunched for another caller (other credentials) is
        never used; the handle's own launch parameters are acquired again.
        """
        fingerprint = launch_fingerprint(handle.launch)
        with self._lock:
            connection = self._connections.get(handle.provider_name)

        if connection is not None and connection.fingerprint == fingerprint:
            if connection.state == ConnectionState.CONNECTED and connection.transport.is_alive:
                return connection.transport
        elif connection is not None:
            logger.info(f"Connection to '{handle.provider_name}' was relaunched with other "
                        f"launch parameters, re-acquiring")

        return self._acquire_connection(handle.provider_name, handle.launch).transport

    def _mark_degraded(self, provider_name: str, error: str) -> None:
        with self._lock:
            connection = self._connections.get(provider_name)
            if connection is not None:
                connection.state = ConnectionState.DEGRADED
                connection.last_error = error
                self._states[provider_name] = ConnectionState.DEGRADED

    # Lifecycle and diagnostics

    def release(self, provider_name: str) -> None:
        """Deliberately disconnect one provider."""
        self._teardown(provider_name, ConnectionState.DISCONNECTED)
        logger.info(f"Disconnected from provider '{provider_name}'")

    def shutdown(self) -> None:
        """Disconnect every provider."""
        with self._lock:
            names = list(self._connections)
        for name in names:
            self.release(name)
        logger.info("Disconnected from all providers")

    def state_of(self, provider_name: str) -> ConnectionState:
        with self._lock:
            return self._states.get(provider_name, ConnectionState.DISCONNECTED)

    def generation_of(self, provider_name: str) -> Optional[int]:
        with self._lock:
            connection = self._connections.get(provider_name)
            return connection.generation if connection else None

    def connected_providers(self) -> List[str]:
        with self._lock:
            return sorted(
                name for name, conn in self._connections.items()
                if conn.state == ConnectionState.CONNECTED
            )

    def last_error(self, provider_name: str) -> Optional[str]:
        with self._lock:
            connection = self._connections.get(provider_name)
            return connection.last_error if connection else None

    def health(self, provider_name: str) -> bool:
        """Liveness probe without reconnecting."""
        with self._lock:
            connection = self._connections.get(provider_name)
        if connection is None:
            return False
        return connection.transport.ping(self.probe_timeout_sec)

    def health_all(self, provider_names: List[str]) -> Dict[str, bool]:
        return {name: self.health(name) for name in provider_names}

    def _count(self, provider_name: str, key: str) -> None:
        with self._lock:
            counters = self._stats.setdefault(provider_name, {})
            counters[key] = counters.get(key, 0) + 1

    def stats(self) -> Dict[str, Dict[str, int]]:
        with self._lock:
            return {name: dict(counters) for name, counters in self._stats.items()}
