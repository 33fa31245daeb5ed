"""
Provider registry for tool provider descriptors.

Implements descriptor storage, alias resolution, category listing and the
per-provider parameter normalizer table.
"""

import logging
import os
import re
from typing import Any, Dict, List, Optional, Tuple

from .types import (
    NetworkLaunch,
    NetworkProtocol,
    OperationSchema,
    ProviderDescriptor,
    SubprocessLaunch,
    Transport,
)
from .normalizers import MappingNormalizer, ParameterNormalizer
from ..exceptions import ProviderNotFound


logger = logging.getLogger(__name__)

ENV_PLACEHOLDER = re.compile(r'^\$\{env\.([^}]+)\}$')

# Historical naming suffixes tolerated when resolving a provider name
NAME_SUFFIXES = ("-mcp-service", "-mcp-server", "-service", "-mcp")


class ProviderRegistry:
    """
    Registry for provider descriptors.

    Read-only after startup: descriptors and aliases are registered while
    configuration is loaded, and every later operation is a pure lookup.
    """

    def __init__(self):
        """Initialize empty provider registry."""
        self._providers: Dict[str, ProviderDescriptor] = {}
        self._aliases: Dict[str, str] = {}
        self._normalizers: Dict[str, ParameterNormalizer] = {}

    def register(self, descriptor: ProviderDescriptor) -> None:
        """
        Register a provider descriptor.

        Args:
            descriptor: Provider descriptor to register

        Raises:
            ValueError: If descriptor is invalid
        """
        errors = descriptor.validate()
        if errors:
            raise ValueError(f"Invalid provider descriptor: {'; '.join(errors)}")

        self._providers[descriptor.name] = descriptor
        logger.debug(f"Registered provider: {descriptor.name}")

    def register_alias(self, alias: str, canonical: str) -> None:
        """Map an alternate or historical name onto a canonical provider name."""
        self._aliases[alias.lower()] = canonical

    def register_normalizer(self, provider_name: str, normalizer: ParameterNormalizer) -> None:
        """Attach a parameter normalizer to a provider."""
        self._normalizers[self.resolve_alias(provider_name)] = normalizer

    def normalizer_for(self, provider_name: str) -> Optional[ParameterNormalizer]:
        return self._normalizers.get(self.resolve_alias(provider_name))

    def register_from_config(
        self,
        providers_config: Dict[str, Dict[str, Any]],
        aliases: Optional[Dict[str, str]] = None,
    ) -> List[str]:
        """
        Register providers from configuration.

        Args:
            providers_config: Provider definitions keyed by name
            aliases: Alternate name to canonical name mapping

        Returns:
            List of validation errors (empty if all valid)
        """
        errors = []

        for name, config in providers_config.items():
            try:
                descriptor = self._descriptor_from_config(name, config)

                validation_errors = descriptor.validate()
                if validation_errors:
                    errors.extend(validation_errors)
                    continue

                self.register(descriptor)

                if config.get("parameters"):
                    self.register_normalizer(name, MappingNormalizer.from_config(config["parameters"]))

            except (KeyError, TypeError, ValueError) as e:
                errors.append(f"Error registering provider '{name}': {e}")

        for alias, canonical in (aliases or {}).items():
            if canonical not in self._providers:
                errors.append(f"Alias '{alias}' points to unknown provider '{canonical}'")
                continue
            self.register_alias(alias, canonical)

        return errors

    def _descriptor_from_config(self, name: str, config: Dict[str, Any]) -> ProviderDescriptor:
        transport = Transport(config.get("transport", "subprocess"))

        if transport == Transport.SUBPROCESS:
            launch = SubprocessLaunch(
                command=config.get("command", ""),
                args=tuple(str(a) for a in config.get("args", [])),
                env=self._resolve_env_placeholders(config.get("env", {})),
            )
        else:
            launch = NetworkLaunch(
                base_url=config.get("base_url", ""),
                timeout_sec=float(config.get("timeout_sec", 30)),
                retries=config.get("retries"),
                protocol=NetworkProtocol(config.get("protocol", "rest")),
                headers=self._resolve_env_placeholders(config.get("headers", {})),
            )

        static_operations = tuple(
            OperationSchema.from_tool_definition(name, tool)
            for tool in config.get("operations", [])
        )

        return ProviderDescriptor(
            name=name,
            transport=transport,
            launch=launch,
            category=config.get("category", ""),
            auth_required=bool(config.get("auth_required", False)),
            auth_params=tuple(config.get("auth_params", [])),
            static_operations=static_operations,
            description=config.get("description", ""),
        )

    def _resolve_env_placeholders(self, values: Dict[str, Any]) -> Dict[str, str]:
        """Replace ``${env.NAME}`` values with the process environment (empty if unset)."""
        resolved = {}
        for key, value in values.items():
            text = "" if value is None else str(value)
            match = ENV_PLACEHOLDER.match(text)
            if match:
                text = os.environ.get(match.group(1), "")
            resolved[key] = text
        return resolved

    def resolve_alias(self, name: str) -> str:
        """
        Resolve an alternate provider name to its canonical name.

        Args:
            name: Provider name as written in a workflow

        Returns:
            Canonical name, or the name itself when no alias applies
        """
        if name in self._providers:
            return name

        lowered = name.lower()
        if lowered in self._aliases:
            return self._aliases[lowered]

        for canonical in self._providers:
            if canonical.lower() == lowered:
                return canonical

        # Historical names differ only by a transport suffix
        stem = self._strip_suffix(lowered)
        for canonical in self._providers:
            if self._strip_suffix(canonical.lower()) == stem:
                return canonical

        return name

    def _strip_suffix(self, name: str) -> str:
        for suffix in NAME_SUFFIXES:
            if name.endswith(suffix):
                return name[:-len(suffix)]
        return name

    def lookup(self, name: str) -> ProviderDescriptor:
        """
        Get a provider descriptor by name or alias.

        Raises:
            ProviderNotFound: If no such provider is configured
        """
        canonical = self.resolve_alias(name)
        descriptor = self._providers.get(canonical)
        if descriptor is None:
            raise ProviderNotFound(name)
        return descriptor

    def get(self, name: str) -> Optional[ProviderDescriptor]:
        """Like lookup, but returns None for unknown providers."""
        return self._providers.get(self.resolve_alias(name))

    def exists(self, name: str) -> bool:
        return self.resolve_alias(name) in self._providers

    def list_providers(self) -> List[str]:
        return sorted(self._providers)

    def list_by_category(self, category: str) -> List[ProviderDescriptor]:
        """List descriptors in a category (case-insensitive)."""
        wanted = category.lower()
        return [d for d in self._providers.values() if d.category.lower() == wanted]

    def categories(self) -> List[Tuple[str, int]]:
        """Categories with the number of providers in each."""
        counts: Dict[str, int] = {}
        for descriptor in self._providers.values():
            if descriptor.category:
                counts[descriptor.category] = counts.get(descriptor.category, 0) + 1
        return sorted(counts.items())

    def aliases(self) -> Dict[str, str]:
        return dict(self._aliases)
