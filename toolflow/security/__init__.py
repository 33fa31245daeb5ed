"""Security module for credentials and secret masking."""

from .secrets import SecretsManager, SecretsMaskingFilter
from .credentials import (
    Credential,
    CredentialInjector,
    CredentialStore,
    InMemoryCredentialStore,
    YamlCredentialStore,
    credentials_required,
)

__all__ = [
    'SecretsManager',
    'SecretsMaskingFilter',
    'Credential',
    'CredentialInjector',
    'CredentialStore',
    'InMemoryCredentialStore',
    'YamlCredentialStore',
    'credentials_required',
]
