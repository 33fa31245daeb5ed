"""
Execution progress events and observer sinks.

Observers are plain callables taking an ExecutionEvent. An observer that
raises is logged and otherwise ignored; progress reporting never affects the
execution it reports on.
"""

import json
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, Optional, Union

from .security.secrets import SecretsManager


logger = logging.getLogger(__name__)

EXECUTION_START = "execution_start"
STATUS_UPDATE = "status_update"
STEP_START = "step_start"
STEP_COMPLETE = "step_complete"
STEP_ERROR = "step_error"
GENERATING_SUMMARY = "generating_summary"
SUMMARY_CHUNK = "summary_chunk"
SUMMARY_REPLACED = "summary_replaced"
WORKFLOW_COMPLETE = "workflow_complete"
TASK_COMPLETE = "task_complete"
ERROR = "error"


@dataclass(frozen=True)
class ExecutionEvent:
    """One progress notification."""
    event: str
    execution_id: str
    data: Dict[str, Any] = field(default_factory=dict)
    timestamp: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event": self.event,
            "execution_id": self.execution_id,
            "timestamp": self.timestamp,
            "data": self.data,
        }


Observer = Callable[[ExecutionEvent], None]


class EventEmitter:
    """Builds events for one execution and delivers them to an observer."""

    def __init__(
        self,
        execution_id: str,
        observer: Optional[Observer] = None,
        secrets_manager: Optional[SecretsManager] = None,
    ):
        self.execution_id = execution_id
        self.observer = observer
        self.secrets_manager = secrets_manager

    def emit(self, event: str, **data: Any) -> None:
        if self.observer is None:
            return
        if self.secrets_manager is not None:
            data = self.secrets_manager.mask_value(data)
        try:
            self.observer(ExecutionEvent(event, self.execution_id, data))
        except Exception as e:
            logger.warning(f"Observer failed on '{event}': {e}")


class LoggingObserver:
    """Writes events to the standard logger."""

    def __init__(self, level: int = logging.INFO, log: Optional[logging.Logger] = None):
        self.level = level
        self.log = log or logger

    def __call__(self, event: ExecutionEvent) -> None:
        if event.event == SUMMARY_CHUNK:
            return
        details = ", ".join(f"{k}={v}" for k, v in event.data.items() if k != "result")
        self.log.log(self.level, f"[{event.execution_id}] {event.event}" + (f": {details}" if details else ""))


class JsonlEventLog:
    """Appends events as JSON lines to a file."""

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()

    def __call__(self, event: ExecutionEvent) -> None:
        line = json.dumps(event.to_dict(), ensure_ascii=False, default=str)
        with self._lock:
            with open(self.path, "a", encoding="utf-8") as f:
                f.write(line + "\n")


class CompositeObserver:
    """Fans out to several observers; one failing does not stop the rest."""

    def __init__(self, observers: Iterable[Observer]):
        self.observers = list(observers)

    def __call__(self, event: ExecutionEvent) -> None:
        for observer in self.observers:
            try:
                observer(event)
            except Exception as e:
                logger.warning(f"Observer {observer!r} failed on '{event.event}': {e}")
