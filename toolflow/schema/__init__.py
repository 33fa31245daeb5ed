"""Operation schemas: discovery, validation and result handling."""

from .adapter import ToolAdapter, operation_tokens
from .results import Classification, ResultClassifier, classify_result, normalize_result, result_text
from .validation import coerce_value, validate_input

__all__ = [
    "ToolAdapter",
    "operation_tokens",
    "Classification",
    "ResultClassifier",
    "classify_result",
    "normalize_result",
    "result_text",
    "coerce_value",
    "validate_input",
]
