"""Workflow execution module."""

from .types import (
    ExactOperation,
    ExecutionStatus,
    GoalDescription,
    StepResult,
    Workflow,
    WorkflowExecutionResult,
    WorkflowStep,
    operation_ref_from_action,
)
from .reporter import ExecutionReporter, determine_status

__all__ = [
    'ExactOperation',
    'ExecutionStatus',
    'GoalDescription',
    'StepResult',
    'Workflow',
    'WorkflowExecutionResult',
    'WorkflowStep',
    'operation_ref_from_action',
    'ExecutionReporter',
    'determine_status',
]
