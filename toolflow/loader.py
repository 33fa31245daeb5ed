"""Workflow and provider configuration loaders with strict validation."""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional
import yaml

from toolflow.engine import EngineSettings
from toolflow.exceptions import ValidationError, WorkflowValidationError
from toolflow.providers.registry import ProviderRegistry
from toolflow.workflow.types import (
    ExactOperation,
    GoalDescription,
    Workflow,
    WorkflowStep,
    operation_ref_from_action,
)


class PreservingLoader(yaml.SafeLoader):
    """YAML loader that keeps 'on', 'off', 'yes', 'no' as strings instead of booleans."""
    pass


# Country codes like NO and answers like yes/no/on/off are input values, not
# booleans; only true/false keep their boolean meaning
PreservingLoader.yaml_implicit_resolvers = dict(PreservingLoader.yaml_implicit_resolvers)
for _first in "oOyYnN":
    if _first in PreservingLoader.yaml_implicit_resolvers:
        PreservingLoader.yaml_implicit_resolvers[_first] = [
            (tag, regexp) for tag, regexp in PreservingLoader.yaml_implicit_resolvers[_first]
            if tag != 'tag:yaml.org,2002:bool'
        ]


class _StrictLoader:
    """Shared error collection for the loaders."""

    def __init__(self):
        self.errors: List[ValidationError] = []

    def _read_yaml(self, path: Path, what: str) -> Dict[str, Any]:
        try:
            with open(path, 'r') as f:
                data = yaml.load(f, Loader=PreservingLoader)
        except (OSError, yaml.YAMLError) as e:
            self._add_error(f"Failed to load {what}: {e}")
            self._raise_validation_errors()

        if data is None or not isinstance(data, dict):
            self._add_error(f"{what.capitalize()} must be a YAML object/dictionary")
            self._raise_validation_errors()
        return data

    def _check_unknown(self, data: Dict[str, Any], known: set, context: str):
        for key in data.keys():
            if key not in known:
                self._add_error(f"{context}: unknown field '{key}'", context)

    def _add_error(self, message: str, path: str = "", exit_code: int = 2):
        """Add validation error."""
        self.errors.append(ValidationError(message, path, exit_code))

    def _raise_validation_errors(self):
        """Raise WorkflowValidationError with accumulated errors."""
        errors, self.errors = self.errors, []
        raise WorkflowValidationError(errors)


class WorkflowLoader(_StrictLoader):
    """Loads and validates workflow YAML."""

    SUPPORTED_VERSIONS = {"1.0"}
    TOP_LEVEL_FIELDS = {'version', 'name', 'task', 'steps'}
    STEP_FIELDS = {'step', 'provider', 'operation', 'goal', 'action', 'input', 'derive', 'description'}
    OPERATION_FIELDS = ('operation', 'goal', 'action')

    def load(self, workflow_path: Path) -> Workflow:
        """Load and validate workflow YAML."""
        workflow_path = Path(workflow_path)
        data = self._read_yaml(workflow_path, "workflow")
        return self.load_dict(data, str(workflow_path))

    def load_dict(self, data: Dict[str, Any], source_path: Optional[str] = None) -> Workflow:
        """Validate an already parsed workflow mapping."""
        version = data.get('version')
        if not version:
            self._add_error("'version' field is required")
        elif not isinstance(version, str):
            self._add_error(f"'version' field must be a string, got {type(version).__name__}")
        elif version not in self.SUPPORTED_VERSIONS:
            self._add_error(f"Unsupported version '{version}'. Supported: {sorted(self.SUPPORTED_VERSIONS)}")

        self._check_unknown(data, self.TOP_LEVEL_FIELDS, "workflow")

        for text_field in ('name', 'task'):
            if text_field in data and not isinstance(data[text_field], str):
                self._add_error(f"'{text_field}' must be a string")

        steps: List[WorkflowStep] = []
        raw_steps = data.get('steps')
        if not raw_steps:
            self._add_error("'steps' field is required and must not be empty")
        elif not isinstance(raw_steps, list):
            self._add_error("'steps' must be a list")
        else:
            steps = self._validate_steps(raw_steps)

        if self.errors:
            self._raise_validation_errors()

        return Workflow(
            steps=steps,
            task=data.get('task', '') or '',
            name=data.get('name', '') or '',
            version=str(version),
            source_path=source_path,
        )

    def _validate_steps(self, raw_steps: List[Any]) -> List[WorkflowStep]:
        steps: List[WorkflowStep] = []
        for i, raw in enumerate(raw_steps):
            context = f"steps[{i}]"
            if not isinstance(raw, dict):
                self._add_error(f"{context} must be a dictionary", context)
                continue

            self._check_unknown(raw, self.STEP_FIELDS, context)

            number = raw.get('step', i + 1)
            if not isinstance(number, int) or isinstance(number, bool) or number < 1:
                self._add_error(f"{context}: 'step' must be a positive integer", context)
                continue

            provider = raw.get('provider')
            if not isinstance(provider, str) or not provider:
                self._add_error(f"Step {number}: missing required 'provider' field", context)
                continue

            present = [f for f in self.OPERATION_FIELDS if f in raw]
            if len(present) != 1:
                self._add_error(
                    f"Step {number}: exactly one of {list(self.OPERATION_FIELDS)} is required, found {present}",
                    context,
                )
                continue
            value = raw[present[0]]
            if not isinstance(value, str) or not value.strip():
                self._add_error(f"Step {number}: '{present[0]}' must be a non-empty string", context)
                continue

            if present[0] == 'operation':
                operation = ExactOperation(value.strip())
            elif present[0] == 'goal':
                operation = GoalDescription(value.strip())
            else:
                operation = operation_ref_from_action(value)

            derive = raw.get('derive', False)
            if not isinstance(derive, bool):
                self._add_error(f"Step {number}: 'derive' must be a boolean", context)
                continue
            if derive and 'input' in raw:
                self._add_error(f"Step {number}: 'input' and 'derive' are mutually exclusive", context)
                continue

            self._check_env_variables(raw.get('input'), f"Step {number}")

            steps.append(WorkflowStep(
                step_number=number,
                provider=provider,
                operation=operation,
                input=raw.get('input'),
                derive_from_previous=derive,
            ))

        steps.sort(key=lambda s: s.step_number)
        numbers = [s.step_number for s in steps]
        if steps and not self.errors and numbers != list(range(1, len(steps) + 1)):
            self._add_error(f"Step numbers must run 1..{len(steps)} without gaps or duplicates, got {numbers}")
        return steps

    def _check_env_variables(self, value: Any, context: str):
        """Credentials come from the credential store, never from workflow text."""
        if isinstance(value, str):
            if '${env.' in value:
                self._add_error(f"{context}: ${{env.*}} namespace not allowed in workflow input")
        elif isinstance(value, dict):
            for item in value.values():
                self._check_env_variables(item, context)
        elif isinstance(value, list):
            for item in value:
                self._check_env_variables(item, context)


@dataclass
class ProviderConfig:
    """Result of loading a providers file."""
    registry: ProviderRegistry
    settings: EngineSettings
    aliases: Dict[str, str] = field(default_factory=dict)


class ProviderConfigLoader(_StrictLoader):
    """Loads and validates the provider catalogue YAML."""

    TOP_LEVEL_FIELDS = {'version', 'settings', 'aliases', 'providers'}
    PROVIDER_FIELDS = {
        'transport', 'command', 'args', 'env', 'base_url', 'timeout_sec', 'retries',
        'protocol', 'headers', 'operations', 'category', 'auth_required', 'auth_params',
        'description', 'parameters',
    }
    PARAMETER_FIELDS = {'rename', 'defaults', 'date_fields', 'date_format'}
    TRANSPORTS = {'subprocess', 'network'}
    PROTOCOLS = {'rest', 'jsonrpc'}

    def load(self, config_path: Path) -> ProviderConfig:
        data = self._read_yaml(Path(config_path), "provider configuration")
        return self.load_dict(data)

    def load_dict(self, data: Dict[str, Any]) -> ProviderConfig:
        self._check_unknown(data, self.TOP_LEVEL_FIELDS, "providers file")

        settings = self._validate_settings(data.get('settings') or {})

        providers = data.get('providers')
        if not isinstance(providers, dict) or not providers:
            self._add_error("'providers' must be a non-empty dictionary")
            providers = {}
        for name, config in providers.items():
            self._validate_provider(str(name), config)

        aliases = data.get('aliases') or {}
        if not isinstance(aliases, dict):
            self._add_error("'aliases' must be a dictionary of alias: provider")
            aliases = {}

        if self.errors:
            self._raise_validation_errors()

        registry = ProviderRegistry()
        for message in registry.register_from_config(providers, {str(k): str(v) for k, v in aliases.items()}):
            self._add_error(message)
        if self.errors:
            self._raise_validation_errors()

        return ProviderConfig(registry=registry, settings=settings, aliases=dict(aliases))

    def _validate_settings(self, settings: Any) -> EngineSettings:
        if not isinstance(settings, dict):
            self._add_error("'settings' must be a dictionary")
            return EngineSettings()

        self._check_unknown(settings, set(EngineSettings.FIELDS), "settings")
        try:
            result = EngineSettings.from_mapping(settings)
        except (TypeError, ValueError) as e:
            self._add_error(f"settings: {e}")
            return EngineSettings()
        for message in result.validate():
            self._add_error(f"settings: {message}")
        return result

    def _validate_provider(self, name: str, config: Any):
        context = f"providers.{name}"
        if not isinstance(config, dict):
            self._add_error(f"Provider '{name}' must be a dictionary", context)
            return

        self._check_unknown(config, self.PROVIDER_FIELDS, context)

        transport = config.get('transport', 'subprocess')
        if transport not in self.TRANSPORTS:
            self._add_error(f"Provider '{name}': transport must be one of {sorted(self.TRANSPORTS)}", context)
            return

        if transport == 'subprocess':
            if not isinstance(config.get('command'), str) or not config.get('command'):
                self._add_error(f"Provider '{name}' missing required 'command' field", context)
            if 'args' in config and not isinstance(config['args'], list):
                self._add_error(f"Provider '{name}' args must be a list", context)
            if 'env' in config and not isinstance(config['env'], dict):
                self._add_error(f"Provider '{name}' env must be a dictionary", context)
        else:
            if not isinstance(config.get('base_url'), str) or not config.get('base_url'):
                self._add_error(f"Provider '{name}' missing required 'base_url' field", context)
            if config.get('protocol', 'rest') not in self.PROTOCOLS:
                self._add_error(f"Provider '{name}': protocol must be one of {sorted(self.PROTOCOLS)}", context)
            if 'headers' in config and not isinstance(config['headers'], dict):
                self._add_error(f"Provider '{name}' headers must be a dictionary", context)
            retries = config.get('retries')
            if retries is not None and (not isinstance(retries, int) or isinstance(retries, bool) or retries < 1):
                self._add_error(f"Provider '{name}' retries must be a positive integer", context)

        auth_params = config.get('auth_params', [])
        if not isinstance(auth_params, list) or not all(isinstance(p, str) and p for p in auth_params):
            self._add_error(f"Provider '{name}' auth_params must be a list of names", context)
        if 'auth_required' in config and not isinstance(config['auth_required'], bool):
            self._add_error(f"Provider '{name}' auth_required must be a boolean", context)

        operations = config.get('operations', [])
        if not isinstance(operations, list):
            self._add_error(f"Provider '{name}' operations must be a list", context)
        else:
            for i, operation in enumerate(operations):
                if not isinstance(operation, dict) or not operation.get('name'):
                    self._add_error(f"Provider '{name}' operations[{i}] needs a 'name'", context)

        parameters = config.get('parameters')
        if parameters is not None:
            if not isinstance(parameters, dict):
                self._add_error(f"Provider '{name}' parameters must be a dictionary", context)
            else:
                self._check_unknown(parameters, self.PARAMETER_FIELDS, f"{context}.parameters")
