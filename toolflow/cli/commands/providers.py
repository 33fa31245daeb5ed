"""Providers command: list the configured catalogue."""

import logging
from argparse import Namespace

from toolflow.exceptions import WorkflowValidationError
from toolflow.security.secrets import SecretsManager

from .common import configure_logging, load_provider_config, report_validation_errors


logger = logging.getLogger(__name__)


def list_providers(args: Namespace) -> int:
    """Print providers grouped by category, optionally filtered to one category."""
    configure_logging(args, SecretsManager())

    try:
        config = load_provider_config(args.providers)
    except FileNotFoundError as e:
        logger.error(f"File not found: {e}")
        return 1
    except WorkflowValidationError as e:
        return report_validation_errors(e)

    registry = config.registry
    if args.category:
        descriptors = registry.list_by_category(args.category)
        if not descriptors:
            print(f"No providers in category '{args.category}'")
            return 0
    else:
        descriptors = [registry.lookup(name) for name in registry.list_providers()]

    for descriptor in sorted(descriptors, key=lambda d: (d.category, d.name)):
        auth = " [auth]" if descriptor.auth_required else ""
        category = descriptor.category or "uncategorized"
        print(f"{descriptor.name} ({descriptor.transport.value}, {category}){auth}")
        if descriptor.description:
            print(f"    {descriptor.description}")

    if not args.category:
        for category, count in registry.categories():
            logger.debug(f"Category {category}: {count} providers")
    return 0
