"""
User credentials and their injection into provider launch parameters.

A provider declares the credential keys it expects (``auth_params``). Keys
with a static non-empty value in the provider configuration are left alone;
the rest are filled from the user's verified credential. Injected values are
never persisted and are registered for masking.
"""

import logging
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Protocol, Tuple, Union

import yaml

from ..exceptions import ValidationError, WorkflowValidationError
from ..providers.registry import ProviderRegistry
from ..providers.types import LaunchSpec, ProviderDescriptor, SubprocessLaunch
from .secrets import SecretsManager


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Credential:
    """A user's credential for one provider."""
    user_id: str
    provider_name: str
    is_verified: bool = False
    auth_data: Dict[str, str] = field(default_factory=dict)


class CredentialStore(Protocol):
    """Read access to user credentials."""

    def get_user_credential(self, user_id: str, provider_name: str) -> Optional[Credential]:
        ...

    def is_every_required_credential_verified(self, workflow, user_id: str,
                                              registry: ProviderRegistry) -> bool:
        ...


def credentials_required(descriptor: ProviderDescriptor) -> bool:
    """True when the provider needs a user credential to be usable."""
    if not descriptor.auth_required:
        return False
    return any(not value for value in descriptor.static_credential_values().values())


class InMemoryCredentialStore:
    """Credential store held in memory, keyed by (user, provider)."""

    def __init__(self, credentials: Optional[Iterable[Credential]] = None):
        self._credentials: Dict[Tuple[str, str], Credential] = {}
        for credential in credentials or ():
            self.add(credential)

    def add(self, credential: Credential) -> None:
        self._credentials[(credential.user_id, credential.provider_name)] = credential

    def get_user_credential(self, user_id: str, provider_name: str) -> Optional[Credential]:
        return self._credentials.get((user_id, provider_name))

    def missing_credentials(self, workflow, user_id: str, registry: ProviderRegistry) -> List[str]:
        """
        Providers used by the workflow whose credentials are not verified.

        Providers unknown to the registry are skipped; their steps fail on
        lookup instead.
        """
        missing: List[str] = []
        for name in workflow.required_providers():
            canonical = registry.resolve_alias(name)
            descriptor = registry.get(canonical)
            if descriptor is None or not credentials_required(descriptor):
                continue
            credential = self.get_user_credential(user_id, canonical)
            if credential is None or not credential.is_verified:
                missing.append(canonical)
        return missing

    def is_every_required_credential_verified(self, workflow, user_id: str,
                                              registry: ProviderRegistry) -> bool:
        return not self.missing_credentials(workflow, user_id, registry)


class YamlCredentialStore(InMemoryCredentialStore):
    """
    Credential store loaded from a YAML file.

    Format::

        users:
          alice:
            coinmarketcap:
              verified: true
              auth_data:
                COINMARKETCAP_API_KEY: "..."
    """

    def __init__(self, path: Union[str, Path]):
        super().__init__()
        self.path = Path(path)
        self._load()

    def _load(self) -> None:
        with open(self.path, 'r') as f:
            data = yaml.safe_load(f) or {}

        errors: List[ValidationError] = []
        users = data.get('users', {}) if isinstance(data, dict) else None
        if not isinstance(users, dict):
            raise WorkflowValidationError([ValidationError("'users' must be a mapping", "users")])

        for user_id, providers in users.items():
            if not isinstance(providers, dict):
                errors.append(ValidationError(f"Credentials for user '{user_id}' must be a mapping",
                                              f"users.{user_id}"))
                continue
            for provider_name, entry in providers.items():
                path = f"users.{user_id}.{provider_name}"
                if not isinstance(entry, dict):
                    errors.append(ValidationError(f"Credential '{path}' must be a mapping", path))
                    continue
                auth_data = entry.get('auth_data', {})
                if not isinstance(auth_data, dict):
                    errors.append(ValidationError(f"'{path}.auth_data' must be a mapping", path))
                    continue
                self.add(Credential(
                    user_id=str(user_id),
                    provider_name=str(provider_name),
                    is_verified=bool(entry.get('verified', False)),
                    auth_data={str(k): str(v) for k, v in auth_data.items() if v is not None},
                ))

        if errors:
            raise WorkflowValidationError(errors)
        logger.debug(f"Loaded {len(self._credentials)} credential(s) from {self.path}")


class CredentialInjector:
    """Merges verified user credentials into provider launch parameters."""

    def __init__(self, store: CredentialStore, secrets_manager: Optional[SecretsManager] = None):
        self.store = store
        self.secrets_manager = secrets_manager or SecretsManager()

    def resolve(self, descriptor: ProviderDescriptor, user_id: str) -> LaunchSpec:
        """
        Launch parameters for the provider with the user's credentials.

        Keys that already have a static value keep it. Keys the user has no
        verified value for stay empty; the call proceeds and may fail
        downstream.

        Args:
            descriptor: Provider catalogue entry
            user_id: Whose credentials to inject

        Returns:
            Ephemeral launch specification (never persisted)
        """
        static = descriptor.static_credential_values()
        unresolved = [key for key, value in static.items() if not value]
        if not unresolved:
            return descriptor.launch

        credential = self.store.get_user_credential(user_id, descriptor.name)
        if credential is None or not credential.is_verified:
            logger.warning(f"No verified credential for user '{user_id}' on '{descriptor.name}'; "
                           f"{', '.join(unresolved)} left empty")
            return descriptor.launch

        values = {key: credential.auth_data[key] for key in unresolved if credential.auth_data.get(key)}
        still_missing = [key for key in unresolved if key not in values]
        if still_missing:
            logger.warning(f"Credential for '{descriptor.name}' lacks {', '.join(still_missing)}")
        if not values:
            return descriptor.launch

        self.secrets_manager.register(values.values())
        logger.info(f"Injected {len(values)} credential value(s) into '{descriptor.name}': "
                    f"{', '.join(sorted(values))}")

        launch = descriptor.launch
        if isinstance(launch, SubprocessLaunch):
            return replace(launch, env={**launch.env, **values})
        return replace(launch, headers={**launch.headers, **values})
