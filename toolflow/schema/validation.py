"""
Input validation against an operation schema.

Fills defaults and coerces primitive values into the declared types
(recursively for arrays and objects), then checks the result against the
operation's JSON schema with jsonschema.
"""

import json
import logging
from typing import Any, Dict, List, Optional

import jsonschema

from ..exceptions import InputValidationError
from ..providers.types import OperationSchema, ParameterSpec


logger = logging.getLogger(__name__)

_TRUE = {"true", "yes", "y", "1", "on"}
_FALSE = {"false", "no", "n", "0", "off"}


def validate_input(schema: OperationSchema, candidate: Any) -> Dict[str, Any]:
    """
    Produce arguments that satisfy the operation schema.

    Args:
        schema: Target operation
        candidate: Step input (mapping, scalar or None)

    Returns:
        Validated argument mapping

    Raises:
        InputValidationError: If required fields cannot be satisfied, a
            value cannot be coerced, or the coerced arguments break a schema
            constraint (enum, range, pattern, nested required fields)
    """
    arguments = _bind(schema, candidate)
    validated: Dict[str, Any] = {}
    missing: List[str] = []

    for name, spec in schema.parameters.items():
        if name in arguments and arguments[name] is not None:
            validated[name] = coerce_value(arguments[name], spec, f"{schema.name}.{name}")
        elif spec.default is not None:
            validated[name] = spec.default
        elif spec.required:
            missing.append(name)

    if missing:
        raise InputValidationError(
            f"Missing required parameter(s) for '{schema.name}': {', '.join(missing)}",
            {"operation": schema.name, "missing": missing},
        )

    extras = [key for key in arguments if key not in schema.parameters]
    if extras:
        if schema.additional_properties:
            for key in extras:
                validated[key] = arguments[key]
        else:
            logger.debug(f"Dropping undeclared parameter(s) for '{schema.name}': {extras}")

    _check_schema(schema, validated)
    return validated


def _check_schema(schema: OperationSchema, arguments: Dict[str, Any]) -> None:
    validator = jsonschema.Draft7Validator(schema.input_schema())
    errors = sorted(validator.iter_errors(arguments), key=lambda e: [str(p) for p in e.absolute_path])
    if not errors:
        return

    error = errors[0]
    parameter = schema.name + "".join(
        f"[{part}]" if isinstance(part, int) else f".{part}" for part in error.absolute_path
    )
    raise InputValidationError(
        f"Parameter '{parameter}' is invalid: {error.message}",
        {"operation": schema.name, "parameter": parameter, "validator": error.validator,
         "errors": len(errors)},
    )


def _bind(schema: OperationSchema, candidate: Any) -> Dict[str, Any]:
    """Turn the candidate into a mapping of argument names."""
    if candidate is None:
        return {}
    if isinstance(candidate, dict):
        return dict(candidate)

    if isinstance(candidate, str):
        stripped = candidate.strip()
        if stripped.startswith("{"):
            try:
                parsed = json.loads(stripped)
            except json.JSONDecodeError:
                parsed = None
            if isinstance(parsed, dict):
                return parsed

    required = schema.required_parameters
    if len(required) == 1:
        return {required[0]: candidate}
    if len(schema.parameters) == 1:
        return {next(iter(schema.parameters)): candidate}

    raise InputValidationError(
        f"Cannot bind a {type(candidate).__name__} input to '{schema.name}': "
        "it declares more than one parameter",
        {"operation": schema.name, "parameters": list(schema.parameters)},
    )


def coerce_value(value: Any, spec: ParameterSpec, path: str = "") -> Any:
    """
    Coerce one value into the type declared by ``spec``.

    Raises:
        InputValidationError: If the value cannot represent the declared type
    """
    declared = spec.type
    if declared == "string":
        result = _to_string(value)
    elif declared == "integer":
        result = _to_integer(value, path)
    elif declared == "number":
        result = _to_number(value, path)
    elif declared == "boolean":
        result = _to_boolean(value, path)
    elif declared == "array":
        result = _to_array(value, spec, path)
    elif declared == "object":
        result = _to_object(value, spec, path)
    else:
        result = value

    if spec.enum is not None:
        result = _canonical_enum(result, spec.enum)
    return result


def _to_string(value: Any) -> str:
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (dict, list)):
        return json.dumps(value, ensure_ascii=False)
    return str(value)


def _invalid(path: str, value: Any, expected: str) -> InputValidationError:
    return InputValidationError(
        f"Parameter '{path}' expects {expected}, got {value!r}",
        {"parameter": path, "expected": expected},
    )


def _to_integer(value: Any, path: str) -> int:
    if isinstance(value, bool):
        raise _invalid(path, value, "an integer")
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, str):
        text = value.strip()
        try:
            return int(text)
        except ValueError:
            pass
        try:
            number = float(text)
        except ValueError:
            raise _invalid(path, value, "an integer")
        if number.is_integer():
            return int(number)
    raise _invalid(path, value, "an integer")


def _to_number(value: Any, path: str) -> Any:
    if isinstance(value, bool):
        raise _invalid(path, value, "a number")
    if isinstance(value, (int, float)):
        return value
    if isinstance(value, str):
        text = value.strip()
        try:
            return int(text)
        except ValueError:
            pass
        try:
            return float(text)
        except ValueError:
            raise _invalid(path, value, "a number")
    raise _invalid(path, value, "a number")


def _to_boolean(value: Any, path: str) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, int) and value in (0, 1):
        return bool(value)
    if isinstance(value, str):
        text = value.strip().lower()
        if text in _TRUE:
            return True
        if text in _FALSE:
            return False
    raise _invalid(path, value, "a boolean")


def _to_array(value: Any, spec: ParameterSpec, path: str) -> List[Any]:
    if isinstance(value, tuple):
        value = list(value)
    if isinstance(value, str) and value.strip().startswith("["):
        try:
            value = json.loads(value)
        except json.JSONDecodeError:
            pass
    if not isinstance(value, list):
        # A lone scalar becomes a one-element array
        value = [value]
    if spec.items is None:
        return value
    return [coerce_value(item, spec.items, f"{path}[{index}]") for index, item in enumerate(value)]


def _to_object(value: Any, spec: ParameterSpec, path: str) -> Dict[str, Any]:
    if isinstance(value, str):
        try:
            value = json.loads(value)
        except json.JSONDecodeError:
            raise _invalid(path, value, "an object")
    if not isinstance(value, dict):
        raise _invalid(path, value, "an object")
    if not spec.properties:
        return value

    result: Dict[str, Any] = {}
    for name, nested in spec.properties.items():
        nested_path = f"{path}.{name}"
        if name in value and value[name] is not None:
            result[name] = coerce_value(value[name], nested, nested_path)
        elif nested.default is not None:
            result[name] = nested.default
    for key, item in value.items():
        result.setdefault(key, item)
    return result


def _canonical_enum(value: Any, allowed: tuple) -> Any:
    """Map a case variant onto the declared option; anything else is left for the schema check."""
    if value in allowed or not isinstance(value, str):
        return value
    for option in allowed:
        if isinstance(option, str) and option.lower() == value.lower():
            return option
    return value


def describe_parameters(schema: OperationSchema) -> Optional[str]:
    """One-line parameter summary used in prompts and CLI listings."""
    if not schema.parameters:
        return None
    parts = []
    for name, spec in schema.parameters.items():
        marker = "" if spec.required else "?"
        parts.append(f"{name}{marker}: {spec.type or 'any'}")
    return ", ".join(parts)
