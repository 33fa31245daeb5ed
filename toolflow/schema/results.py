"""
Result envelopes: normalization and application-error classification.
"""

import json
import re
from dataclasses import dataclass
from typing import Any, Iterable, Optional


def _block_text(block: Any) -> str:
    if isinstance(block, str):
        return block
    if isinstance(block, dict) and block.get("type", "text") == "text" and isinstance(block.get("text"), str):
        return block["text"]
    return json.dumps(block, ensure_ascii=False)


def normalize_result(raw: Any) -> Any:
    """
    Collapse a provider result envelope into text or a structured value.

    - ``{"content": [...]}``: items joined with a newline (text blocks yield
      their text, plain strings pass through, other blocks are JSON-encoded)
    - ``{"content": "str"}`` / ``{"content": {"text": ...}}``: the text
    - strings pass through; any other JSON value is returned unchanged
    """
    if isinstance(raw, dict) and "content" in raw:
        content = raw["content"]
        if isinstance(content, list):
            return "\n".join(_block_text(block) for block in content)
        if isinstance(content, str):
            return content
        if isinstance(content, dict) and isinstance(content.get("text"), str):
            return content["text"]
        return content
    return raw


def result_text(raw: Any) -> str:
    """Textual view of a result for heuristics and prompts."""
    normalized = normalize_result(raw)
    if normalized is None:
        return ""
    if isinstance(normalized, str):
        return normalized
    return json.dumps(normalized, ensure_ascii=False, default=str)


@dataclass(frozen=True)
class Classification:
    """Outcome of classifying a raw result."""
    success: bool
    error: Optional[str] = None


class ResultClassifier:
    """
    Heuristic detection of provider-reported failures hidden in results.

    Providers frequently report failures as ordinary content. The rules, in
    order:
    1. ``isError: true`` or a truthy top-level ``error`` means failure.
    2. Content that carries recognisable data (JSON with ``status`` and
       ``data``, ``data``, ``result`` or ``results``; or text with data
       indicators such as ``"price":``) is a success.
    3. Otherwise any error keyword in the text means failure.
    4. A non-zero ``"error_code"`` means failure.
    """

    ERROR_KEYWORDS = ("unauthorized", "forbidden", "rate limit", "invalid", "exception", "failed")
    DATA_INDICATORS = (
        '"price":', '"market_cap":', '"volume_24h":', '"symbol":', '"name":',
        '"rank":', '"dominance":', '"timestamp":',
    )

    _ERROR_CODE = re.compile(r'"error_code"\s*:\s*"?(-?\d+)"?')
    _ERROR_MESSAGE = re.compile(r'"error_message"\s*:\s*"([^"]+)"')

    def __init__(
        self,
        error_keywords: Optional[Iterable[str]] = None,
        data_indicators: Optional[Iterable[str]] = None,
    ):
        self.error_keywords = tuple(error_keywords or self.ERROR_KEYWORDS)
        self.data_indicators = tuple(data_indicators or self.DATA_INDICATORS)

    def classify(self, raw: Any) -> Classification:
        if isinstance(raw, dict):
            if raw.get("isError") is True:
                return Classification(False, result_text(raw) or "Provider reported an error")
            if raw.get("error"):
                error = raw["error"]
                message = error.get("message", json.dumps(error)) if isinstance(error, dict) else str(error)
                return Classification(False, f"Provider returned error: {message}")

        text = result_text(raw)

        if not self.has_valid_data(text):
            lowered = text.lower()
            for keyword in self.error_keywords:
                if keyword in lowered:
                    return Classification(False, f"Operation failed: {text[:500]}")

        match = self._ERROR_CODE.search(text)
        if match and int(match.group(1)) != 0:
            message = self._ERROR_MESSAGE.search(text)
            return Classification(False, f"API error: {message.group(1) if message else 'API returned error'}")

        return Classification(True)

    def has_valid_data(self, text: str) -> bool:
        try:
            parsed = json.loads(text)
        except (json.JSONDecodeError, ValueError):
            return any(indicator in text for indicator in self.data_indicators)

        if isinstance(parsed, list):
            return len(parsed) > 0
        if not isinstance(parsed, dict):
            return False

        status = parsed.get("status")
        if isinstance(status, dict) and parsed.get("data") is not None:
            if str(status.get("error_code", "0")) == "0":
                return True
        if isinstance(parsed.get("data"), (list, dict)):
            return True
        if parsed.get("result") or parsed.get("results"):
            return True
        return False


_default_classifier = ResultClassifier()


def classify_result(raw: Any) -> Classification:
    """Classify with the default heuristic."""
    return _default_classifier.classify(raw)
