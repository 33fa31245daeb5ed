"""
Provider catalogue module for toolflow.

Provides the registry, descriptor types and parameter normalizers.
"""

from .types import (
    Transport,
    NetworkProtocol,
    SubprocessLaunch,
    NetworkLaunch,
    ParameterSpec,
    OperationSchema,
    ProviderDescriptor,
)
from .registry import ProviderRegistry
from .normalizers import MappingNormalizer, ParameterNormalizer


__all__ = [
    "Transport",
    "NetworkProtocol",
    "SubprocessLaunch",
    "NetworkLaunch",
    "ParameterSpec",
    "OperationSchema",
    "ProviderDescriptor",
    "ProviderRegistry",
    "MappingNormalizer",
    "ParameterNormalizer",
]
