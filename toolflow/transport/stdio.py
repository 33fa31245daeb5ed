"""
Subprocess transport: newline-delimited JSON-RPC 2.0 over stdin/stdout.

The provider process is started with the engine process environment overlaid
with the launch env (credentials included). A reader thread moves every
stdout line into a queue so each request can wait with a bounded timeout.
"""

import itertools
import json
import logging
import os
import queue
import subprocess
import threading
import time
from collections import deque
from typing import Any, Dict, List, Optional

from .base import ProviderTransport
from ..exceptions import ApplicationError, ProcessExitedError, TransportError, TransportTimeout
from ..providers.types import SubprocessLaunch


logger = logging.getLogger(__name__)

PROTOCOL_VERSION = "2024-11-05"
CLIENT_INFO = {"name": "toolflow", "version": "0.1.0"}

_EOF = object()


class SubprocessTransport(ProviderTransport):
    """JSON-RPC client speaking to a provider subprocess."""

    STDERR_TAIL_LINES = 50

    def __init__(
        self,
        provider_name: str,
        launch: SubprocessLaunch,
        connect_timeout_sec: float = 30.0,
    ):
        super().__init__(provider_name)
        self.launch = launch
        self.connect_timeout_sec = connect_timeout_sec

        self._process: Optional[subprocess.Popen] = None
        self._responses: "queue.Queue[Any]" = queue.Queue()
        self._request_lock = threading.Lock()
        self._ids = itertools.count(1)
        self._stderr_tail: deque = deque(maxlen=self.STDERR_TAIL_LINES)

    def connect(self) -> None:
        process_env = os.environ.copy()
        process_env.update(self.launch.env)

        logger.debug(f"Starting provider '{self.provider_name}': {self.launch.argv()}")
        try:
            self._process = subprocess.Popen(
                self.launch.argv(),
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                env=process_env,
                text=True,
                encoding="utf-8",
                bufsize=1,
            )
        except OSError as e:
            raise TransportError(
                f"Failed to start provider '{self.provider_name}': {e}",
                {"provider": self.provider_name, "command": self.launch.argv()},
            ) from e

        threading.Thread(
            target=self._read_stdout, name=f"{self.provider_name}-stdout", daemon=True
        ).start()
        threading.Thread(
            target=self._read_stderr, name=f"{self.provider_name}-stderr", daemon=True
        ).start()

        self._request("initialize", {
            "protocolVersion": PROTOCOL_VERSION,
            "capabilities": {"tools": {}},
            "clientInfo": CLIENT_INFO,
        }, self.connect_timeout_sec)
        self._notify("notifications/initialized")

    def _read_stdout(self) -> None:
        process = self._process
        assert process is not None and process.stdout is not None
        for line in process.stdout:
            line = line.strip()
            if not line:
                continue
            try:
                self._responses.put(json.loads(line))
            except json.JSONDecodeError:
                # Providers sometimes log to stdout; not a protocol message
                logger.debug(f"[{self.provider_name}] non-JSON stdout: {line[:200]}")
        self._responses.put(_EOF)

    def _read_stderr(self) -> None:
        process = self._process
        assert process is not None and process.stderr is not None
        for line in process.stderr:
            self._stderr_tail.append(line.rstrip())

    def _write(self, message: Dict[str, Any]) -> None:
        if not self.is_alive:
            raise ProcessExitedError(
                f"Provider '{self.provider_name}' process is not running",
                self._exit_context(),
            )
        assert self._process is not None and self._process.stdin is not None
        try:
            self._process.stdin.write(json.dumps(message) + "\n")
            self._process.stdin.flush()
        except (BrokenPipeError, OSError, ValueError) as e:
            raise ProcessExitedError(
                f"Provider '{self.provider_name}' closed its input: {e}",
                self._exit_context(),
            ) from e

    def _notify(self, method: str, params: Optional[Dict[str, Any]] = None) -> None:
        message: Dict[str, Any] = {"jsonrpc": "2.0", "method": method}
        if params is not None:
            message["params"] = params
        self._write(message)

    def _request(self, method: str, params: Optional[Dict[str, Any]], timeout_sec: float) -> Any:
        """
        Send one request and wait for its response.

        One request is in flight at a time; waiting for another caller's
        request to finish counts against ``timeout_sec``.
        """
        deadline = time.monotonic() + timeout_sec
        if not self._request_lock.acquire(timeout=max(timeout_sec, 0)):
            raise TransportTimeout(
                f"Provider '{self.provider_name}' stayed busy for {timeout_sec}s before '{method}' could be sent",
                {"provider": self.provider_name, "method": method, "timeout_sec": timeout_sec},
            )
        try:
            request_id = next(self._ids)
            message: Dict[str, Any] = {"jsonrpc": "2.0", "id": request_id, "method": method}
            if params is not None:
                message["params"] = params
            self._write(message)

            while True:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    raise TransportTimeout(
                        f"Provider '{self.provider_name}' did not answer '{method}' within {timeout_sec}s",
                        {"provider": self.provider_name, "method": method, "timeout_sec": timeout_sec},
                    )
                try:
                    response = self._responses.get(timeout=remaining)
                except queue.Empty:
                    continue

                if response is _EOF:
                    # Keep the sentinel visible to later requests
                    self._responses.put(_EOF)
                    raise ProcessExitedError(
                        f"Provider '{self.provider_name}' exited during '{method}'",
                        self._exit_context(),
                    )

                if not isinstance(response, dict) or response.get("id") != request_id:
                    # Notification or a late answer to a timed-out request
                    continue

                if "error" in response:
                    error = response["error"] or {}
                    raise ApplicationError(
                        f"Provider '{self.provider_name}' rejected '{method}': {error.get('message', error)}",
                        {"provider": self.provider_name, "method": method, "error": error},
                    )
                return response.get("result")
        finally:
            self._request_lock.release()

    def _exit_context(self) -> Dict[str, Any]:
        return {
            "provider": self.provider_name,
            "exit_code": self._process.poll() if self._process else None,
            "stderr_tail": list(self._stderr_tail)[-10:],
        }

    def list_tools(self) -> List[Dict[str, Any]]:
        tools: List[Dict[str, Any]] = []
        cursor = None
        while True:
            params = {"cursor": cursor} if cursor else {}
            result = self._request("tools/list", params, self.connect_timeout_sec) or {}
            tools.extend(result.get("tools", []))
            cursor = result.get("nextCursor")
            if not cursor:
                return tools

    def call_tool(self, name: str, arguments: Dict[str, Any], timeout_sec: float) -> Any:
        return self._request("tools/call", {"name": name, "arguments": arguments}, timeout_sec)

    def ping(self, timeout_sec: float) -> bool:
        if not self.is_alive:
            return False
        try:
            self._request("ping", {}, timeout_sec)
            return True
        except ApplicationError:
            # Answered, just doesn't implement ping
            return True
        except TransportError as e:
            logger.warning(f"Liveness probe failed for '{self.provider_name}': {e}")
            return False

    def close(self) -> None:
        process = self._process
        if process is None:
            return
        self._process = None

        try:
            if process.stdin:
                process.stdin.close()
        except OSError:
            pass

        if process.poll() is None:
            process.terminate()
            try:
                process.wait(timeout=5)
            except subprocess.TimeoutExpired:
                process.kill()
                process.wait()
        logger.debug(f"Provider '{self.provider_name}' process stopped")

    @property
    def is_alive(self) -> bool:
        return self._process is not None and self._process.poll() is None

    @property
    def pid(self) -> Optional[int]:
        return self._process.pid if self._process else None
