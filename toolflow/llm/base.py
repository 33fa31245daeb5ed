"""
Text-generation collaborator interface.

The engine only ever asks for text; every decision made from that text
(which operation, which arguments, whether to fall back) stays with the
caller.
"""

import json
import re
from typing import Any, Iterator, Optional, Protocol, runtime_checkable


@runtime_checkable
class TextGenerator(Protocol):
    """Anything that turns a prompt into text."""

    def suggest(self, prompt: str) -> str:
        ...


def supports_streaming(generator: Any) -> bool:
    """True when the generator also exposes ``stream(prompt) -> Iterator[str]``."""
    return callable(getattr(generator, "stream", None))


def stream_or_suggest(generator: TextGenerator, prompt: str) -> Iterator[str]:
    """Yield chunks from ``stream`` when available, else the whole reply once."""
    if supports_streaming(generator):
        yield from generator.stream(prompt)  # type: ignore[attr-defined]
    else:
        yield generator.suggest(prompt)


_FENCE = re.compile(r"```(?:json)?\s*(.*?)```", re.DOTALL)


def extract_json(text: Optional[str]) -> Optional[Any]:
    """
    Pull a JSON value out of a model reply.

    Accepts bare JSON, JSON inside a fenced code block, or JSON embedded in
    surrounding prose (first ``{`` to last ``}``).

    Returns:
        Parsed value, or None if nothing parses
    """
    if not text:
        return None

    candidates = [text.strip()]
    fenced = _FENCE.search(text)
    if fenced:
        candidates.append(fenced.group(1).strip())
    start, end = text.find("{"), text.rfind("}")
    if 0 <= start < end:
        candidates.append(text[start:end + 1])

    for candidate in candidates:
        try:
            return json.loads(candidate)
        except (json.JSONDecodeError, ValueError):
            continue
    return None
