"""
Provider type definitions for toolflow.

Defines the immutable catalogue entries for tool providers and the schemas
of the operations they expose.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple, Union
from enum import Enum


class Transport(str, Enum):
    """How the engine talks to a provider."""
    SUBPROCESS = "subprocess"
    NETWORK = "network"


class NetworkProtocol(str, Enum):
    """Wire protocol spoken by a network provider."""
    REST = "rest"
    JSONRPC = "jsonrpc"


@dataclass(frozen=True)
class SubprocessLaunch:
    """
    Launch specification for a subprocess provider.

    Attributes:
        command: Executable to start
        args: Arguments passed to the executable
        env: Environment overlay (empty values are credential slots)
    """
    command: str
    args: Tuple[str, ...] = ()
    env: Dict[str, str] = field(default_factory=dict)

    def argv(self) -> List[str]:
        return [self.command, *self.args]


@dataclass(frozen=True)
class NetworkLaunch:
    """
    Connection specification for a network provider.

    Attributes:
        base_url: Service root URL
        timeout_sec: Per-request timeout
        retries: Transport retry attempts for this provider (None = engine default)
        protocol: REST adapter or JSON-RPC endpoint
        headers: Static request headers (empty values are credential slots)
    """
    base_url: str
    timeout_sec: float = 30.0
    retries: Optional[int] = None
    protocol: NetworkProtocol = NetworkProtocol.REST
    headers: Dict[str, str] = field(default_factory=dict)


LaunchSpec = Union[SubprocessLaunch, NetworkLaunch]


JSON_TYPES = frozenset({"string", "integer", "number", "boolean", "array", "object", "null"})

# JSON-schema keywords kept verbatim and enforced after coercion
CONSTRAINT_KEYWORDS = (
    "minimum", "maximum", "exclusiveMinimum", "exclusiveMaximum", "multipleOf",
    "minLength", "maxLength", "pattern",
    "minItems", "maxItems", "uniqueItems",
)


@dataclass(frozen=True)
class ParameterSpec:
    """Declared type information for one operation parameter."""
    type: Optional[str] = None
    required: bool = False
    default: Any = None
    enum: Optional[Tuple[Any, ...]] = None
    description: str = ""
    items: Optional["ParameterSpec"] = None
    properties: Optional[Dict[str, "ParameterSpec"]] = None
    constraints: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_json_schema(cls, schema: Dict[str, Any], required: bool = False) -> "ParameterSpec":
        """Build a spec from one JSON-schema property definition."""
        if not isinstance(schema, dict):
            return cls(required=required)

        declared_type = schema.get("type")
        if isinstance(declared_type, list):
            # ["string", "null"] style unions: keep the first concrete type
            concrete = [t for t in declared_type if t != "null"]
            declared_type = concrete[0] if concrete else None

        items = None
        if isinstance(schema.get("items"), dict):
            items = cls.from_json_schema(schema["items"])

        properties = None
        if isinstance(schema.get("properties"), dict):
            nested_required = set(schema.get("required") or [])
            properties = {
                name: cls.from_json_schema(prop, name in nested_required)
                for name, prop in schema["properties"].items()
            }

        enum = schema.get("enum")
        constraints = {key: schema[key] for key in CONSTRAINT_KEYWORDS if key in schema}
        return cls(
            type=declared_type,
            required=required,
            default=schema.get("default"),
            enum=tuple(enum) if isinstance(enum, list) else None,
            description=schema.get("description", "") or "",
            items=items,
            properties=properties,
            constraints=constraints,
        )

    def to_json_schema(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {}
        if self.type in JSON_TYPES:
            result["type"] = self.type
        if self.description:
            result["description"] = self.description
        if self.default is not None:
            result["default"] = self.default
        if self.enum is not None:
            result["enum"] = list(self.enum)
        if self.items is not None:
            result["items"] = self.items.to_json_schema()
        if self.properties is not None:
            result["properties"] = {k: v.to_json_schema() for k, v in self.properties.items()}
            required = [k for k, v in self.properties.items() if v.required]
            if required:
                result["required"] = required
        result.update(self.constraints)
        return result


@dataclass(frozen=True)
class OperationSchema:
    """
    A named operation exposed by a provider.

    Attributes:
        provider_name: Canonical provider name
        name: Operation name as the provider declares it
        description: Human-readable description
        parameters: Parameter name to spec mapping
        additional_properties: Whether undeclared keys may be passed through
    """
    provider_name: str
    name: str
    description: str = ""
    parameters: Dict[str, ParameterSpec] = field(default_factory=dict)
    additional_properties: bool = True

    @classmethod
    def from_tool_definition(cls, provider_name: str, tool: Dict[str, Any]) -> "OperationSchema":
        """Build from a provider tool listing entry (``inputSchema`` style)."""
        input_schema = tool.get("inputSchema") or tool.get("input_schema") or tool.get("parameters") or {}
        required = set(input_schema.get("required") or [])
        properties = input_schema.get("properties") or {}
        return cls(
            provider_name=provider_name,
            name=tool["name"],
            description=tool.get("description", "") or "",
            parameters={
                name: ParameterSpec.from_json_schema(prop, name in required)
                for name, prop in properties.items()
            },
            additional_properties=input_schema.get("additionalProperties", True) is not False,
        )

    @property
    def required_parameters(self) -> List[str]:
        return [name for name, spec in self.parameters.items() if spec.required]

    def input_schema(self) -> Dict[str, Any]:
        """Render the parameters back into a JSON schema (used in prompts)."""
        schema: Dict[str, Any] = {
            "type": "object",
            "properties": {k: v.to_json_schema() for k, v in self.parameters.items()},
        }
        if self.required_parameters:
            schema["required"] = self.required_parameters
        return schema


@dataclass(frozen=True)
class ProviderDescriptor:
    """
    Immutable catalogue entry for a tool provider.

    Attributes:
        name: Canonical provider name (unique key)
        transport: Subprocess or network
        launch: Launch/connection parameters for the transport
        category: Catalogue category (e.g. 'Market Data')
        auth_required: Whether a verified user credential is required
        auth_params: Credential keys the provider expects
        static_operations: Pre-declared operations (skip discovery)
        description: Catalogue description
    """
    name: str
    transport: Transport
    launch: LaunchSpec
    category: str = ""
    auth_required: bool = False
    auth_params: Tuple[str, ...] = ()
    static_operations: Tuple[OperationSchema, ...] = ()
    description: str = ""

    def validate(self) -> List[str]:
        """
        Validate descriptor consistency.

        Returns:
            List of validation error messages (empty if valid)
        """
        errors = []

        if not self.name:
            errors.append("Provider name cannot be empty")

        if self.transport == Transport.SUBPROCESS:
            if not isinstance(self.launch, SubprocessLaunch):
                errors.append(f"Provider '{self.name}': subprocess transport requires a command")
            elif not self.launch.command:
                errors.append(f"Provider '{self.name}': command cannot be empty")
        elif self.transport == Transport.NETWORK:
            if not isinstance(self.launch, NetworkLaunch):
                errors.append(f"Provider '{self.name}': network transport requires a base_url")
            elif not self.launch.base_url:
                errors.append(f"Provider '{self.name}': base_url cannot be empty")

        if self.auth_required and not self.auth_params:
            errors.append(f"Provider '{self.name}': auth_required set but no auth_params declared")

        return errors

    def static_credential_values(self) -> Dict[str, str]:
        """Credential slots and their statically configured values."""
        if isinstance(self.launch, SubprocessLaunch):
            source = self.launch.env
        else:
            source = self.launch.headers
        return {key: source.get(key, "") for key in self.auth_params}
