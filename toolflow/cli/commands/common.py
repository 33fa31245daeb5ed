"""Helpers shared by the run and resume commands."""

import json
import logging
from argparse import Namespace
from pathlib import Path
from typing import Optional

from toolflow.engine import Engine, EngineSettings
from toolflow.events import CompositeObserver, JsonlEventLog, LoggingObserver, Observer
from toolflow.exceptions import WorkflowValidationError
from toolflow.llm import HttpTextGenerator
from toolflow.loader import ProviderConfig, ProviderConfigLoader
from toolflow.security.credentials import CredentialStore, InMemoryCredentialStore, YamlCredentialStore
from toolflow.security.secrets import SecretsManager, SecretsMaskingFilter
from toolflow.state import StateManager
from toolflow.workflow.types import ExecutionStatus, WorkflowExecutionResult


logger = logging.getLogger(__name__)

EXIT_CODES = {
    ExecutionStatus.COMPLETED: 0,
    ExecutionStatus.FAILED: 1,
    ExecutionStatus.PARTIAL: 3,
}


def configure_logging(args: Namespace, secrets_manager: SecretsManager) -> None:
    """Set up root logging from --log-level/--debug/--quiet/--verbose and mask secrets."""
    log_level = getattr(logging, args.log_level.upper())
    if args.debug:
        log_level = logging.DEBUG
    elif args.quiet:
        log_level = logging.ERROR
    elif args.verbose:
        log_level = logging.DEBUG

    logging.basicConfig(
        level=log_level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
    root = logging.getLogger()
    root.setLevel(log_level)
    for handler in root.handlers:
        handler.addFilter(SecretsMaskingFilter(secrets_manager))


def report_validation_errors(error: WorkflowValidationError) -> int:
    for item in error.errors:
        logger.error(f"Validation error: {item.message}")
    return error.exit_code


def load_provider_config(path: str) -> ProviderConfig:
    """
    Load the provider catalogue.

    Raises:
        FileNotFoundError: If the file does not exist
        WorkflowValidationError: If the catalogue is invalid
    """
    providers_path = Path(path)
    if not providers_path.exists():
        raise FileNotFoundError(f"Provider file not found: {providers_path}")
    return ProviderConfigLoader().load(providers_path)


def apply_overrides(settings: EngineSettings, args: Namespace) -> EngineSettings:
    """Command line values win over the catalogue's settings block."""
    if args.max_attempts is not None:
        settings.max_attempts = args.max_attempts
    if args.backoff_unit is not None:
        settings.backoff_unit_sec = args.backoff_unit
    if args.call_timeout is not None:
        settings.call_timeout_sec = args.call_timeout
    return settings


def load_credential_store(path: Optional[str]) -> CredentialStore:
    if not path:
        return InMemoryCredentialStore()
    credentials_path = Path(path)
    if not credentials_path.exists():
        raise FileNotFoundError(f"Credentials file not found: {credentials_path}")
    return YamlCredentialStore(credentials_path)


def build_observer(args: Namespace) -> Observer:
    observers = [LoggingObserver()]
    if args.events:
        observers.append(JsonlEventLog(args.events))
    return CompositeObserver(observers)


def build_engine(
    config: ProviderConfig,
    credential_store: CredentialStore,
    state_manager: StateManager,
    secrets_manager: SecretsManager,
) -> Engine:
    text_generator = HttpTextGenerator.from_env()
    if text_generator is None:
        logger.info("No text generator configured; derivation and summaries use fallbacks")
    return Engine(
        config.registry,
        settings=config.settings,
        credential_store=credential_store,
        text_generator=text_generator,
        store=state_manager,
        secrets_manager=secrets_manager,
    )


def print_result(result: WorkflowExecutionResult, as_json: bool) -> None:
    if as_json:
        print(json.dumps(result.to_dict(), indent=2, ensure_ascii=False, default=str))
        return

    print(f"Execution {result.execution_id}: {result.status.value}")
    for step in result.steps:
        outcome = "ok" if step.success else f"failed ({step.error_message})"
        print(f"  step {step.step_number} {step.provider}.{step.operation}: {outcome}")
    if result.error:
        print(f"Error: {result.error}")
    if result.summary:
        print()
        print(result.summary)


def exit_code_for(result: WorkflowExecutionResult) -> int:
    return EXIT_CODES.get(result.status, 1)
