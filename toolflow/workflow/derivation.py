"""
Deriving a step's input from the previous step's result.
"""

import json
import logging
from typing import Any, Optional

from ..llm import TextGenerator, extract_json
from .types import WorkflowStep


logger = logging.getLogger(__name__)

MAX_PROMPT_RESULT_CHARS = 4000


class InputDeriver:
    """
    Transforms the previous normalized result into input for the next step.

    Any failure (no collaborator, an exception, an empty reply) returns the
    previous result unchanged.
    """

    def __init__(self, text_generator: Optional[TextGenerator] = None):
        self.text_generator = text_generator

    def derive(self, previous_result: Any, step: WorkflowStep, task: str = "") -> Any:
        if self.text_generator is None:
            logger.debug(f"No text generator; step {step.step_number} receives the previous result")
            return previous_result

        try:
            reply = self.text_generator.suggest(derivation_prompt(previous_result, step, task))
        except Exception as e:
            logger.warning(f"Input derivation for step {step.step_number} failed, "
                           f"passing previous result through: {e}")
            return previous_result

        if not reply or not reply.strip():
            logger.warning(f"Input derivation for step {step.step_number} returned nothing, "
                           "passing previous result through")
            return previous_result

        parsed = extract_json(reply)
        if parsed is not None:
            return parsed
        return reply.strip()


def derivation_prompt(previous_result: Any, step: WorkflowStep, task: str = "") -> str:
    if isinstance(previous_result, str):
        previous = previous_result
    else:
        previous = json.dumps(previous_result, ensure_ascii=False, default=str)
    if len(previous) > MAX_PROMPT_RESULT_CHARS:
        previous = previous[:MAX_PROMPT_RESULT_CHARS] + "..."

    lines = [
        "Transform the output of the previous step into the input for the next step.",
        "",
    ]
    if task:
        lines.append(f"Overall task: {task}")
    lines.extend([
        f"Next step provider: {step.provider}",
        f"Next step operation or goal: {step.operation_label}",
        "",
        "Previous step output:",
        previous,
        "",
        "Reply with only the input for the next step: a JSON object of parameters, "
        "or plain text when the step takes a single text value.",
    ])
    return "\n".join(lines)
