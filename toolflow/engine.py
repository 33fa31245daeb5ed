"""
Engine wiring.

Constructs the shared services explicitly and hands them to the executor.
One Engine is meant to live for the whole process so provider connections
stay warm across workflows.
"""

import logging
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

from .connections import ConnectionManager, TransportFactory
from .events import Observer
from .exec.retry import RetryPolicy
from .llm import TextGenerator
from .providers.registry import ProviderRegistry
from .schema.adapter import ToolAdapter
from .schema.results import ResultClassifier
from .security.credentials import CredentialInjector, CredentialStore, InMemoryCredentialStore
from .security.secrets import SecretsManager
from .state import ExecutionStore, StateManager
from .workflow.executor import WorkflowExecutor
from .workflow.types import Workflow, WorkflowExecutionResult


logger = logging.getLogger(__name__)


@dataclass
class EngineSettings:
    """
    Engine tuning knobs.

    Attributes:
        max_attempts: Attempts per remote call (transport failures only)
        backoff_unit_sec: Attempt k waits 2^k times this before retrying
        call_timeout_sec: Per-call timeout for operations
        connect_timeout_sec: Timeout for handshakes and discovery
        workspace: Root for persisted execution state
    """
    max_attempts: int = 3
    backoff_unit_sec: float = 1.0
    call_timeout_sec: float = 60.0
    connect_timeout_sec: float = 30.0
    workspace: Path = field(default_factory=Path.cwd)

    FIELDS = ("max_attempts", "backoff_unit_sec", "call_timeout_sec", "connect_timeout_sec", "workspace")

    def validate(self) -> List[str]:
        errors = []
        if self.max_attempts < 1:
            errors.append("max_attempts must be at least 1")
        if self.backoff_unit_sec < 0:
            errors.append("backoff_unit_sec cannot be negative")
        if self.call_timeout_sec <= 0:
            errors.append("call_timeout_sec must be positive")
        if self.connect_timeout_sec <= 0:
            errors.append("connect_timeout_sec must be positive")
        return errors

    @classmethod
    def from_mapping(cls, data: Optional[Dict[str, Any]]) -> "EngineSettings":
        """Build from a ``settings:`` mapping; unknown keys are ignored."""
        data = data or {}
        settings = cls()
        if "max_attempts" in data:
            settings.max_attempts = int(data["max_attempts"])
        if "backoff_unit_sec" in data:
            settings.backoff_unit_sec = float(data["backoff_unit_sec"])
        if "call_timeout_sec" in data:
            settings.call_timeout_sec = float(data["call_timeout_sec"])
        if "connect_timeout_sec" in data:
            settings.connect_timeout_sec = float(data["connect_timeout_sec"])
        if data.get("workspace"):
            settings.workspace = Path(data["workspace"])
        return settings

    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(max_attempts=self.max_attempts, backoff_unit_sec=self.backoff_unit_sec)


class Engine:
    """Bundles registry, connections, adapter, injector, store and generator."""

    def __init__(
        self,
        registry: ProviderRegistry,
        settings: Optional[EngineSettings] = None,
        credential_store: Optional[CredentialStore] = None,
        text_generator: Optional[TextGenerator] = None,
        store: Optional[ExecutionStore] = None,
        secrets_manager: Optional[SecretsManager] = None,
        transport_factory: Optional[TransportFactory] = None,
        classifier: Optional[ResultClassifier] = None,
    ):
        self.registry = registry
        self.settings = settings or EngineSettings()
        self.secrets_manager = secrets_manager or SecretsManager()
        self.credential_store = credential_store or InMemoryCredentialStore()
        self.text_generator = text_generator

        self.connections = ConnectionManager(
            retry_policy=self.settings.retry_policy(),
            call_timeout_sec=self.settings.call_timeout_sec,
            connect_timeout_sec=self.settings.connect_timeout_sec,
            transport_factory=transport_factory,
        )
        self.adapter = ToolAdapter(self.connections, registry, text_generator)
        self.injector = CredentialInjector(self.credential_store, self.secrets_manager)
        self.store = store or StateManager(self.settings.workspace, secrets_manager=self.secrets_manager)
        self.executor = WorkflowExecutor(
            registry=registry,
            connections=self.connections,
            adapter=self.adapter,
            injector=self.injector,
            store=self.store,
            credential_store=self.credential_store,
            text_generator=text_generator,
            classifier=classifier,
            secrets_manager=self.secrets_manager,
        )

    def execute(
        self,
        workflow: Workflow,
        user_id: str,
        on_event: Optional[Observer] = None,
        execution_id: Optional[str] = None,
        skip_auth_check: bool = False,
        cancel_event: Optional[threading.Event] = None,
    ) -> WorkflowExecutionResult:
        return self.executor.execute(workflow, user_id, on_event=on_event, execution_id=execution_id,
                                     skip_auth_check=skip_auth_check, cancel_event=cancel_event)

    def resume(
        self,
        execution_id: str,
        workflow: Workflow,
        user_id: str,
        on_event: Optional[Observer] = None,
        skip_auth_check: bool = False,
        cancel_event: Optional[threading.Event] = None,
    ) -> WorkflowExecutionResult:
        return self.executor.resume(execution_id, workflow, user_id, on_event=on_event,
                                    skip_auth_check=skip_auth_check, cancel_event=cancel_event)

    def health_all(self) -> Dict[str, bool]:
        """Liveness of every configured provider (False when not connected)."""
        return self.connections.health_all(self.registry.list_providers())

    def shutdown(self) -> None:
        self.connections.shutdown()
        close = getattr(self.text_generator, "close", None)
        if callable(close):
            close()

    def __enter__(self) -> "Engine":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.shutdown()
