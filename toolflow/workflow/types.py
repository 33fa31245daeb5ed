"""
Workflow data model.

Steps reference operations either by exact name or by a natural-language
goal; results are append-only records of what each step did.
"""

from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Union


@dataclass(frozen=True)
class ExactOperation:
    """Operation named exactly as the provider declares it."""
    name: str

    def __str__(self) -> str:
        return self.name


@dataclass(frozen=True)
class GoalDescription:
    """Natural-language description of what the step should achieve."""
    text: str

    def __str__(self) -> str:
        return self.text


OperationRef = Union[ExactOperation, GoalDescription]

# Underscore-free names longer than this read as prose rather than identifiers
GOAL_LENGTH_THRESHOLD = 40


def operation_ref_from_action(action: str) -> OperationRef:
    """
    Classify a free-form ``action`` value.

    Whitespace, non-ASCII characters or a long underscore-free phrase mean a
    goal description; anything else is taken as an exact operation name.
    """
    text = action.strip()
    if any(ch.isspace() for ch in text) or not text.isascii():
        return GoalDescription(text)
    if len(text) > GOAL_LENGTH_THRESHOLD and "_" not in text:
        return GoalDescription(text)
    return ExactOperation(text)


@dataclass
class WorkflowStep:
    """
    One step of a workflow.

    Attributes:
        step_number: 1-based position
        provider: Provider name or alias
        operation: Exact operation or goal description
        input: Static input (used when derive_from_previous is False)
        derive_from_previous: Derive input from the previous step's result
    """
    step_number: int
    provider: str
    operation: OperationRef
    input: Any = None
    derive_from_previous: bool = False

    @property
    def operation_label(self) -> str:
        return str(self.operation)


@dataclass
class Workflow:
    """A named, ordered list of steps plus the task it serves."""
    steps: List[WorkflowStep]
    task: str = ""
    name: str = ""
    version: str = "1.0"
    source_path: Optional[str] = None

    def required_providers(self) -> List[str]:
        seen: List[str] = []
        for step in self.steps:
            if step.provider not in seen:
                seen.append(step.provider)
        return seen


class ExecutionStatus(str, Enum):
    """Overall workflow status."""
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    PARTIAL = "partial"


@dataclass
class StepResult:
    """Recorded outcome of one step."""
    step_number: int
    success: bool
    provider: str = ""
    operation: str = ""
    raw_result: Any = None
    normalized_result: Any = None
    error: Optional[Dict[str, Any]] = None
    duration_ms: Optional[int] = None
    critical: bool = False
    started_at: Optional[str] = None
    completed_at: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dict, omitting None values."""
        return {k: v for k, v in asdict(self).items() if v is not None}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "StepResult":
        known = {k: v for k, v in data.items() if k in cls.__dataclass_fields__}
        return cls(**known)

    @property
    def error_message(self) -> Optional[str]:
        return self.error.get("message") if self.error else None


@dataclass
class WorkflowExecutionResult:
    """Everything an execution produced."""
    execution_id: str
    status: ExecutionStatus
    steps: List[StepResult] = field(default_factory=list)
    final_result: Any = None
    summary: Optional[str] = None
    error: Optional[str] = None

    @property
    def successful_steps(self) -> List[StepResult]:
        return [s for s in self.steps if s.success]

    @property
    def failed_steps(self) -> List[StepResult]:
        return [s for s in self.steps if not s.success]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "execution_id": self.execution_id,
            "status": self.status.value,
            "steps": [s.to_dict() for s in self.steps],
            "final_result": self.final_result,
            "summary": self.summary,
            "error": self.error,
        }
