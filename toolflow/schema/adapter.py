"""
Schema discovery and operation resolution.

The adapter keeps a per-provider cache of operation schemas tied to the
connection generation, resolves exact operation names and natural-language
goals to one operation, and turns step input into validated arguments.
"""

import json
import logging
import re
import threading
from typing import Any, Dict, List, Optional, Set, Tuple

from ..connections import ConnectionHandle, ConnectionManager
from ..exceptions import OperationNotFound
from ..llm import TextGenerator, extract_json
from ..providers.registry import ProviderRegistry
from ..providers.types import OperationSchema
from ..workflow.types import ExactOperation, OperationRef
from .validation import validate_input


logger = logging.getLogger(__name__)

_CAMEL = re.compile(r"(?<=[a-z0-9])(?=[A-Z])")
_WORD = re.compile(r"[a-z0-9]+")
_STOPWORDS = {
    "the", "and", "for", "with", "from", "into", "get", "what", "which", "that",
    "this", "about", "please", "current", "some", "all", "use", "using",
}


def operation_tokens(name: str) -> List[str]:
    """Split an identifier on camelCase, underscores, hyphens and spaces."""
    return _WORD.findall(_CAMEL.sub(" ", name).lower())


def _canonical(name: str) -> str:
    return name.strip().lower().replace("-", "_")


def _stem(token: str) -> str:
    return token[:-1] if len(token) > 3 and token.endswith("s") else token


def _keywords(text: str) -> Set[str]:
    return {_stem(t) for t in operation_tokens(text) if len(t) > 2 and t not in _STOPWORDS}


class ToolAdapter:
    """Bridges workflow steps and provider operation schemas."""

    def __init__(
        self,
        connections: ConnectionManager,
        registry: ProviderRegistry,
        text_generator: Optional[TextGenerator] = None,
    ):
        """
        Initialize adapter.

        Args:
            connections: Connection manager used for discovery round-trips
            registry: Provider registry (static operations, normalizers)
            text_generator: Optional collaborator for goal resolution
        """
        self.connections = connections
        self.registry = registry
        self.text_generator = text_generator
        self._lock = threading.Lock()
        self._cache: Dict[str, Tuple[int, List[OperationSchema]]] = {}

    # Discovery

    def discover(self, handle: ConnectionHandle) -> List[OperationSchema]:
        """
        Return the provider's operations.

        Cached per provider and reused while the connection generation is
        unchanged; pre-declared operations skip the round-trip entirely.
        """
        name = handle.provider_name
        descriptor = self.registry.get(name)
        if descriptor is not None and descriptor.static_operations:
            return list(descriptor.static_operations)

        with self._lock:
            cached = self._cache.get(name)
        if cached is not None and cached[0] == handle.generation:
            return list(cached[1])

        tools = self.connections.list_operations(handle)
        schemas = [
            OperationSchema.from_tool_definition(name, tool)
            for tool in tools
            if isinstance(tool, dict) and tool.get("name")
        ]
        with self._lock:
            self._cache[name] = (handle.generation, schemas)

        logger.info(f"Discovered {len(schemas)} operation(s) on '{name}': "
                    f"{', '.join(s.name for s in schemas)}")
        return list(schemas)

    def clear_cache(self, provider_name: Optional[str] = None) -> None:
        with self._lock:
            if provider_name is None:
                self._cache.clear()
            else:
                self._cache.pop(provider_name, None)

    # Resolution

    @staticmethod
    def find_operation(schemas: List[OperationSchema], name: str) -> Optional[OperationSchema]:
        """Exact match, tolerant of case and hyphen/underscore interchange."""
        for schema in schemas:
            if schema.name == name:
                return schema
        wanted = _canonical(name)
        for schema in schemas:
            if _canonical(schema.name) == wanted:
                return schema
        return None

    def resolve_operation(
        self,
        handle: ConnectionHandle,
        ref: OperationRef,
        candidate_input: Any,
    ) -> Tuple[OperationSchema, Dict[str, Any]]:
        """
        Pick the operation for a step and validate its arguments.

        Args:
            handle: Live connection to the step's provider
            ref: Exact operation name or goal description
            candidate_input: Step input before validation

        Returns:
            Tuple of (operation schema, validated arguments)

        Raises:
            OperationNotFound: If no operation matches
            InputValidationError: If the input cannot satisfy the schema
        """
        schemas = self.discover(handle)
        provider = handle.provider_name

        if isinstance(ref, ExactOperation):
            schema = self.find_operation(schemas, ref.name)
            if schema is None:
                raise OperationNotFound(provider, ref.name, [s.name for s in schemas])
            arguments = candidate_input
        else:
            schema, arguments = self._resolve_goal(provider, schemas, ref.text, candidate_input)

        normalizer = self.registry.normalizer_for(provider)
        if normalizer is not None and isinstance(arguments, dict):
            arguments = normalizer(schema.name, arguments)

        return schema, validate_input(schema, arguments)

    def _resolve_goal(
        self,
        provider: str,
        schemas: List[OperationSchema],
        goal: str,
        candidate_input: Any,
    ) -> Tuple[OperationSchema, Any]:
        chosen: Optional[str] = None
        arguments = candidate_input

        if self.text_generator is not None and schemas:
            chosen, arguments = self._ask_generator(schemas, goal, candidate_input)

        if chosen:
            schema = self.find_operation(schemas, chosen) or self._substring_match(schemas, chosen)
            if schema is not None:
                return schema, arguments
            logger.warning(f"Suggested operation '{chosen}' not exposed by '{provider}', "
                           "falling back to keyword match")

        schema = self._keyword_match(schemas, goal)
        if schema is None:
            raise OperationNotFound(provider, goal, [s.name for s in schemas])
        logger.info(f"Resolved goal '{goal}' to '{provider}.{schema.name}' by keyword overlap")
        return schema, candidate_input

    def _ask_generator(
        self,
        schemas: List[OperationSchema],
        goal: str,
        candidate_input: Any,
    ) -> Tuple[Optional[str], Any]:
        assert self.text_generator is not None
        try:
            reply = self.text_generator.suggest(selection_prompt(schemas, goal, candidate_input))
        except Exception as e:
            logger.warning(f"Operation selection failed, using local match: {e}")
            return None, candidate_input

        parsed = extract_json(reply)
        if isinstance(parsed, dict):
            chosen = parsed.get("operation") or parsed.get("toolName")
            arguments = parsed.get("input", parsed.get("inputParams"))
            if arguments is None:
                arguments = candidate_input
            logger.info(f"Selected operation '{chosen}': {parsed.get('reasoning') or 'no reasoning given'}")
            return (str(chosen) if chosen else None), arguments

        logger.warning("Operation selection reply was not JSON, asking for a name only")
        try:
            reply = self.text_generator.suggest(
                f"Available operations: {', '.join(s.name for s in schemas)}\n"
                f"Objective: {goal}\n"
                "Reply with ONLY the exact operation name."
            )
        except Exception as e:
            logger.warning(f"Operation name fallback failed: {e}")
            return None, candidate_input
        name = (reply or "").strip().strip("`'\"").strip()
        return (name or None), candidate_input

    @staticmethod
    def _substring_match(schemas: List[OperationSchema], name: str) -> Optional[OperationSchema]:
        wanted = _canonical(name)
        for schema in schemas:
            candidate = _canonical(schema.name)
            if wanted in candidate or candidate in wanted:
                return schema
        return None

    @staticmethod
    def _keyword_match(schemas: List[OperationSchema], goal: str) -> Optional[OperationSchema]:
        goal_words = _keywords(goal)
        best: Optional[OperationSchema] = None
        best_score = 0
        for schema in schemas:
            score = 2 * len(goal_words & _keywords(schema.name)) + len(goal_words & _keywords(schema.description))
            if score > best_score:
                best, best_score = schema, score
        return best


def selection_prompt(schemas: List[OperationSchema], goal: str, candidate_input: Any) -> str:
    """Prompt asking the generator to choose an operation and map the input."""
    lines = []
    for schema in schemas:
        lines.append(f"- {schema.name}: {schema.description or 'No description'}")
        if schema.parameters:
            lines.append(f"  Input schema: {json.dumps(schema.input_schema(), ensure_ascii=False)}")

    return (
        "You select the most appropriate tool operation and produce its input parameters.\n\n"
        f"Task objective: {goal}\n"
        f"Original input: {json.dumps(candidate_input, ensure_ascii=False, default=str)}\n\n"
        "Available operations:\n"
        + "\n".join(lines)
        + "\n\nRespond in JSON only:\n"
        '{"operation": "exact_operation_name", "input": { }, "reasoning": "brief explanation"}'
    )
