"""State manager for toolflow executions.

Persists execution traces with atomic writes under
``<workspace>/.toolflow/runs/<execution_id>/state.json``.
"""

import hashlib
import json
import logging
import random
import shutil
import string
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol

from .exceptions import PersistenceError
from .security.secrets import SecretsManager


logger = logging.getLogger(__name__)


class ExecutionStore(Protocol):
    """Where the executor records progress."""

    def save_step_result(self, execution_id: str, step_number: int, success: bool,
                         payload: Dict[str, Any]) -> None:
        ...

    def update_status(self, execution_id: str, status: str) -> None:
        ...

    def update_result(self, execution_id: str, status: str, result: Dict[str, Any]) -> None:
        ...

    def load(self, execution_id: str) -> "RunState":
        ...


@dataclass
class RunState:
    """Complete persisted state of one execution."""
    schema_version: str
    execution_id: str
    started_at: str
    updated_at: str
    status: str
    workflow_file: Optional[str] = None
    workflow_checksum: Optional[str] = None
    workflow_name: str = ""
    user_id: str = ""
    task: str = ""
    run_root: Optional[str] = None
    steps: List[Dict[str, Any]] = field(default_factory=list)
    final_result: Any = None
    summary: Optional[str] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dict for JSON serialization."""
        return {
            "schema_version": self.schema_version,
            "execution_id": self.execution_id,
            "workflow_file": self.workflow_file,
            "workflow_checksum": self.workflow_checksum,
            "workflow_name": self.workflow_name,
            "user_id": self.user_id,
            "task": self.task,
            "started_at": self.started_at,
            "updated_at": self.updated_at,
            "status": self.status,
            "run_root": self.run_root,
            "steps": self.steps,
            "final_result": self.final_result,
            "summary": self.summary,
            "error": self.error,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RunState":
        """Create RunState from dict."""
        return cls(
            schema_version=data["schema_version"],
            execution_id=data["execution_id"],
            started_at=data["started_at"],
            updated_at=data["updated_at"],
            status=data["status"],
            workflow_file=data.get("workflow_file"),
            workflow_checksum=data.get("workflow_checksum"),
            workflow_name=data.get("workflow_name", ""),
            user_id=data.get("user_id", ""),
            task=data.get("task", ""),
            run_root=data.get("run_root"),
            steps=data.get("steps", []),
            final_result=data.get("final_result"),
            summary=data.get("summary"),
            error=data.get("error"),
        )

    def last_step_number(self) -> int:
        return max((s.get("step_number", 0) for s in self.steps), default=0)


def _status_value(status: Any) -> str:
    return getattr(status, "value", status)


class StateManager:
    """Manages execution state with atomic writes and recovery."""

    SCHEMA_VERSION = "1.0.0"

    def __init__(self, workspace: Path, backup_enabled: bool = False, debug: bool = False,
                 secrets_manager: Optional[SecretsManager] = None):
        """Initialize state manager.

        Args:
            workspace: Workspace root directory
            backup_enabled: Enable state backups before each step record
            debug: Debug mode (implies backup_enabled)
            secrets_manager: Masks injected credential values before writing
        """
        self.workspace = Path(workspace)
        self.backup_enabled = backup_enabled or debug
        self.debug = debug
        self.secrets_manager = secrets_manager
        self.runs_root = self.workspace / ".toolflow" / "runs"
        self.max_backups = 3

        self._lock = threading.Lock()
        self._states: Dict[str, RunState] = {}

    @staticmethod
    def generate_execution_id() -> str:
        """Generate execution ID in format: YYYYMMDDTHHMMSSZ-<6char>."""
        timestamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%SZ")
        suffix = ''.join(random.choices(string.ascii_lowercase + string.digits, k=6))
        return f"{timestamp}-{suffix}"

    def run_root(self, execution_id: str) -> Path:
        return self.runs_root / execution_id

    def state_file(self, execution_id: str) -> Path:
        return self.run_root(execution_id) / "state.json"

    @staticmethod
    def calculate_checksum(file_path: Path) -> str:
        """Calculate SHA256 checksum of a file."""
        sha256 = hashlib.sha256()
        with open(file_path, 'rb') as f:
            for chunk in iter(lambda: f.read(4096), b''):
                sha256.update(chunk)
        return f"sha256:{sha256.hexdigest()}"

    def initialize(self, execution_id: str, workflow_file: Optional[str] = None,
                   user_id: str = "", task: str = "", workflow_name: str = "") -> RunState:
        """Initialize a new execution state.

        Args:
            execution_id: Execution identifier
            workflow_file: Path to the workflow YAML file (None for in-code workflows)
            user_id: User the workflow runs for
            task: Task description
            workflow_name: Workflow name

        Returns:
            Initialized RunState
        """
        checksum = None
        if workflow_file:
            workflow_path = Path(workflow_file)
            if not workflow_path.exists():
                raise FileNotFoundError(f"Workflow file not found: {workflow_file}")
            checksum = self.calculate_checksum(workflow_path)

        now = datetime.now(timezone.utc).isoformat()
        state = RunState(
            schema_version=self.SCHEMA_VERSION,
            execution_id=execution_id,
            started_at=now,
            updated_at=now,
            status="running",
            workflow_file=workflow_file,
            workflow_checksum=checksum,
            workflow_name=workflow_name,
            user_id=user_id,
            task=task,
            run_root=str(self.run_root(execution_id)),
        )
        with self._lock:
            self._states[execution_id] = state
            self._write_state(state)
        return state

    def load(self, execution_id: str) -> RunState:
        """Load existing state from disk.

        Raises:
            FileNotFoundError: If state file doesn't exist
            json.JSONDecodeError: If state file is corrupted
        """
        state_file = self.state_file(execution_id)
        if not state_file.exists():
            raise FileNotFoundError(f"State file not found: {state_file}")

        with open(state_file, 'r') as f:
            data = json.load(f)

        state = RunState.from_dict(data)
        with self._lock:
            self._states[execution_id] = state
        return state

    def _state_for(self, execution_id: str) -> RunState:
        """In-memory state, reloaded from disk or started fresh when unknown."""
        state = self._states.get(execution_id)
        if state is not None:
            return state

        state_file = self.state_file(execution_id)
        if state_file.exists():
            try:
                with open(state_file, 'r') as f:
                    state = RunState.from_dict(json.load(f))
            except (OSError, json.JSONDecodeError, KeyError) as e:
                raise PersistenceError(f"Cannot read state for execution '{execution_id}': {e}",
                                       {"execution_id": execution_id}) from e
        else:
            now = datetime.now(timezone.utc).isoformat()
            state = RunState(
                schema_version=self.SCHEMA_VERSION,
                execution_id=execution_id,
                started_at=now,
                updated_at=now,
                status="running",
                run_root=str(self.run_root(execution_id)),
            )
        self._states[execution_id] = state
        return state

    def _write_state(self, state: RunState) -> None:
        """Write state atomically (temp file + rename)."""
        state.updated_at = datetime.now(timezone.utc).isoformat()
        data = state.to_dict()
        if self.secrets_manager is not None:
            data = self.secrets_manager.mask_value(data)

        state_file = self.state_file(state.execution_id)
        temp_file = state_file.with_suffix('.tmp')
        try:
            state_file.parent.mkdir(parents=True, exist_ok=True)
            with open(temp_file, 'w') as f:
                json.dump(data, f, indent=2, default=str)
            temp_file.replace(state_file)
        except (OSError, TypeError, ValueError) as e:
            raise PersistenceError(
                f"Failed to write state for execution '{state.execution_id}': {e}",
                {"execution_id": state.execution_id, "path": str(state_file)},
            ) from e

    def backup_state(self, execution_id: str, step_number: int):
        """Create a backup of current state before a step record is written."""
        state_file = self.state_file(execution_id)
        if not self.backup_enabled or not state_file.exists():
            return

        backup_file = state_file.parent / f"state.json.step_{step_number:04d}.bak"
        shutil.copy2(state_file, backup_file)
        self._rotate_backups(execution_id)

    def _rotate_backups(self, execution_id: str):
        """Keep only the last N backups."""
        backups = sorted(self.run_root(execution_id).glob("state.json.step_*.bak"))
        if len(backups) > self.max_backups:
            for old_backup in backups[:-self.max_backups]:
                old_backup.unlink()

    # ExecutionStore

    def save_step_result(self, execution_id: str, step_number: int, success: bool,
                         payload: Dict[str, Any]) -> None:
        """Append (or on resume, replace) the record for one step."""
        with self._lock:
            state = self._state_for(execution_id)
            self.backup_state(execution_id, step_number)
            record = dict(payload)
            record["step_number"] = step_number
            record["success"] = success
            state.steps = [s for s in state.steps if s.get("step_number") != step_number]
            state.steps.append(record)
            state.steps.sort(key=lambda s: s.get("step_number", 0))
            self._write_state(state)
        logger.debug(f"Recorded step {step_number} of '{execution_id}' (success={success})")

    def update_status(self, execution_id: str, status: str) -> None:
        with self._lock:
            state = self._state_for(execution_id)
            state.status = _status_value(status)
            self._write_state(state)

    def update_result(self, execution_id: str, status: str, result: Dict[str, Any]) -> None:
        """Record the final status together with result, summary and error."""
        with self._lock:
            state = self._state_for(execution_id)
            state.status = _status_value(status)
            state.final_result = result.get("final_result")
            state.summary = result.get("summary")
            state.error = result.get("error")
            self._write_state(state)

    # Inspection

    def validate_checksum(self, execution_id: str, workflow_file: str) -> bool:
        """Validate workflow checksum matches the recorded one."""
        state = self._states.get(execution_id)
        if state is None or not state.workflow_checksum:
            return False
        workflow_path = Path(workflow_file)
        if not workflow_path.exists():
            return False
        return self.calculate_checksum(workflow_path) == state.workflow_checksum

    def list_runs(self) -> List[str]:
        if not self.runs_root.exists():
            return []
        return sorted(p.name for p in self.runs_root.iterdir() if (p / "state.json").exists())

    def attempt_repair(self, execution_id: str) -> bool:
        """Attempt to repair state from latest valid backup.

        Returns:
            True if repair successful, False otherwise
        """
        state_file = self.state_file(execution_id)
        backups = sorted(state_file.parent.glob("state.json.step_*.bak"), reverse=True)

        for backup in backups:
            try:
                with open(backup, 'r') as f:
                    data = json.load(f)
                state = RunState.from_dict(data)
                shutil.copy2(backup, state_file)
                with self._lock:
                    self._states[execution_id] = state
                return True
            except (json.JSONDecodeError, KeyError, TypeError):
                continue

        return False
