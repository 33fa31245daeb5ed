"""
Execution reporting: status aggregation and result summaries.
"""

import json
import logging
from typing import Any, Callable, List, Optional

from ..llm import TextGenerator, stream_or_suggest
from .types import ExecutionStatus, StepResult, WorkflowExecutionResult


logger = logging.getLogger(__name__)

STEP_PREVIEW_CHARS = 100

SUMMARY_INSTRUCTIONS = """You summarize workflow execution results into a clear report for the user.
Cover:
1. Execution overview: total, successful and failed steps
2. Operations that succeeded and what they produced
3. For failed steps, the reason and its impact
4. The overall outcome of the task
5. Recommendations for the user, if any

Use friendly, non-technical language while staying accurate."""


def determine_status(steps: List[StepResult]) -> ExecutionStatus:
    """
    Aggregate step outcomes.

    completed: every step succeeded. failed: a critical step failed or no
    step succeeded. partial: only non-critical failures and at least one
    success.
    """
    if not steps:
        return ExecutionStatus.FAILED
    if all(step.success for step in steps):
        return ExecutionStatus.COMPLETED
    if any(not step.success and step.critical for step in steps):
        return ExecutionStatus.FAILED
    if not any(step.success for step in steps):
        return ExecutionStatus.FAILED
    return ExecutionStatus.PARTIAL


def final_result_of(steps: List[StepResult]) -> Any:
    """Normalized result of the last successful step."""
    for step in reversed(steps):
        if step.success:
            return step.normalized_result
    return None


def fallback_summary(steps: List[StepResult]) -> str:
    succeeded = sum(1 for s in steps if s.success)
    return (
        f"Task execution completed, executed {len(steps)} steps in total, "
        f"{succeeded} successful, {len(steps) - succeeded} failed. "
        "Please check detailed step results for more information."
    )


def _preview(value: Any) -> str:
    text = value if isinstance(value, str) else json.dumps(value, ensure_ascii=False, default=str)
    if len(text) > STEP_PREVIEW_CHARS:
        return text[:STEP_PREVIEW_CHARS] + "..."
    return text


def summary_prompt(task: str, steps: List[StepResult]) -> str:
    succeeded = sum(1 for s in steps if s.success)
    details = []
    for step in steps:
        if step.success:
            details.append(f"Step {step.step_number}: succeeded - {_preview(step.normalized_result)}")
        else:
            details.append(f"Step {step.step_number}: failed - {step.error_message}")

    return (
        f"{SUMMARY_INSTRUCTIONS}\n\n"
        f"Task content: {task}\n\n"
        "Execution statistics:\n"
        f"- Total steps: {len(steps)}\n"
        f"- Successful steps: {succeeded}\n"
        f"- Failed steps: {len(steps) - succeeded}\n\n"
        "Step details:\n"
        + "\n".join(details)
    )


class ExecutionReporter:
    """Builds the final execution result and its narrative summary."""

    def __init__(self, text_generator: Optional[TextGenerator] = None):
        self.text_generator = text_generator

    def build_result(
        self,
        execution_id: str,
        steps: List[StepResult],
        summary: Optional[str] = None,
        error: Optional[str] = None,
    ) -> WorkflowExecutionResult:
        return WorkflowExecutionResult(
            execution_id=execution_id,
            status=determine_status(steps),
            steps=list(steps),
            final_result=final_result_of(steps),
            summary=summary,
            error=error,
        )

    def summarize(
        self,
        task: str,
        steps: List[StepResult],
        on_chunk: Optional[Callable[[str], None]] = None,
        on_fallback: Optional[Callable[[str], None]] = None,
    ) -> str:
        """
        Narrate the execution.

        Chunks are forwarded to ``on_chunk`` as they arrive when the
        collaborator streams. Any failure yields the local summary; if
        chunks were already forwarded, ``on_fallback`` receives that summary
        so listeners can replace the partial text.
        """
        if self.text_generator is None:
            return fallback_summary(steps)

        chunks: List[str] = []
        try:
            for chunk in stream_or_suggest(self.text_generator, summary_prompt(task, steps)):
                if not chunk:
                    continue
                chunks.append(chunk)
                if on_chunk is not None:
                    on_chunk(chunk)
        except Exception as e:
            logger.error(f"Generating result summary failed after {len(chunks)} chunk(s): {e}")
            return self._fall_back(steps, chunks, on_fallback)

        summary = "".join(chunks).strip()
        return summary or self._fall_back(steps, chunks, on_fallback)

    @staticmethod
    def _fall_back(
        steps: List[StepResult],
        streamed: List[str],
        on_fallback: Optional[Callable[[str], None]],
    ) -> str:
        summary = fallback_summary(steps)
        if streamed and on_fallback is not None:
            on_fallback(summary)
        return summary
