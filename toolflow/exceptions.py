"""Toolflow exceptions."""

from typing import Any, Dict, List, Optional
from dataclasses import dataclass


@dataclass
class ValidationError:
    """Single validation error."""
    message: str
    path: str = ""
    exit_code: int = 2


class ToolflowError(Exception):
    """Base class for engine errors.

    Every subclass carries an ``error_type`` used when the error is recorded
    in a step result, so persisted traces stay machine-readable.
    """

    error_type = "toolflow_error"
    retryable = False

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.context = context or {}

    def to_dict(self) -> Dict[str, Any]:
        """Convert to the structured error format stored in state."""
        return {
            "type": self.error_type,
            "message": self.message,
            "context": self.context,
        }


class WorkflowValidationError(ToolflowError):
    """Raised when workflow or provider configuration validation fails.

    This exception is raised by the loaders when validation errors occur,
    allowing the CLI to catch it and map to appropriate exit codes.
    """

    error_type = "validation_error"

    def __init__(self, errors: List[ValidationError]):
        self.errors = errors
        self.exit_code = 2  # Default validation exit code

        messages = []
        for error in errors:
            messages.append(f"Validation error: {error.message}")

        super().__init__("\n".join(messages), {"errors": [e.message for e in errors]})


class ProviderNotFound(ToolflowError):
    """No provider with the requested name (or alias) is configured."""

    error_type = "provider_not_found"

    def __init__(self, name: str):
        super().__init__(f"Provider '{name}' not found", {"provider": name})
        self.name = name


class OperationNotFound(ToolflowError):
    """The requested operation is not exposed by the provider."""

    error_type = "operation_not_found"

    def __init__(self, provider: str, operation: str, available: Optional[List[str]] = None):
        super().__init__(
            f"Operation '{operation}' does not exist in provider '{provider}'",
            {"provider": provider, "operation": operation, "available": available or []},
        )
        self.provider = provider
        self.operation = operation


class InputValidationError(ToolflowError):
    """Step input cannot be made to satisfy the operation schema."""

    error_type = "input_validation_error"


class TransportError(ToolflowError):
    """Transport-level failure (connection reset, broken pipe, 5xx)."""

    error_type = "transport_error"
    retryable = True


class TransportTimeout(TransportError):
    """A remote call did not answer within its timeout."""

    error_type = "timeout"


class ProcessExitedError(TransportError):
    """The provider subprocess exited while a call was in flight."""

    error_type = "process_exited"


class ConnectionFailedError(ToolflowError):
    """A provider could not be (re)connected after one reconnect cycle."""

    error_type = "connection_failed"


class ApplicationError(ToolflowError):
    """The provider reported a logical failure. Never retried."""

    error_type = "application_error"


class AuthPreflightError(ToolflowError):
    """Required provider credentials are not verified for the user."""

    error_type = "missing_credentials"


class PersistenceError(ToolflowError):
    """The execution store could not record progress."""

    error_type = "persistence_error"


class TextGenerationError(ToolflowError):
    """The text-generation collaborator failed or returned nothing usable."""

    error_type = "text_generation_error"
