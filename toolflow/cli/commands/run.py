"""Run command implementation."""

import logging
from argparse import Namespace
from pathlib import Path

from toolflow.exceptions import ToolflowError, WorkflowValidationError
from toolflow.loader import WorkflowLoader
from toolflow.security.secrets import SecretsManager
from toolflow.state import StateManager

from .common import (
    apply_overrides,
    build_engine,
    build_observer,
    configure_logging,
    exit_code_for,
    load_credential_store,
    load_provider_config,
    print_result,
    report_validation_errors,
)


logger = logging.getLogger(__name__)


def run_workflow(args: Namespace) -> int:
    """
    Run a workflow for one user.

    Returns:
        0 when every step succeeded, 3 for a partial run, 1 for a failed run
        or missing file, 2 for invalid workflow or provider configuration
    """
    secrets_manager = SecretsManager()
    configure_logging(args, secrets_manager)

    try:
        workflow_path = Path(args.workflow).resolve()
        if not workflow_path.exists():
            logger.error(f"Workflow file not found: {workflow_path}")
            return 1

        logger.info(f"Loading workflow: {workflow_path}")
        try:
            workflow = WorkflowLoader().load(workflow_path)
            config = load_provider_config(args.providers)
        except WorkflowValidationError as e:
            return report_validation_errors(e)

        settings = apply_overrides(config.settings, args)
        setting_errors = settings.validate()
        if setting_errors:
            for message in setting_errors:
                logger.error(f"Validation error: {message}")
            return 2

        credential_store = load_credential_store(args.credentials)

        # Dry run mode - just validate
        if args.dry_run:
            unknown = [p for p in workflow.required_providers() if not config.registry.exists(p)]
            if unknown:
                for name in unknown:
                    logger.error(f"Validation error: provider '{name}' is not configured")
                return 2
            logger.info(f"[DRY RUN] Workflow validation successful ({len(workflow.steps)} steps)")
            return 0

        # --debug implies backup_enabled
        state_manager = StateManager(
            workspace=settings.workspace,
            backup_enabled=args.backup_state,
            debug=args.debug,
            secrets_manager=secrets_manager,
        )
        execution_id = state_manager.generate_execution_id()
        state_manager.initialize(
            execution_id,
            workflow_file=str(workflow_path),
            user_id=args.user,
            task=workflow.task,
            workflow_name=workflow.name,
        )
        logger.info(f"Created new run: {execution_id}")

        with build_engine(config, credential_store, state_manager, secrets_manager) as engine:
            try:
                result = engine.execute(
                    workflow,
                    args.user,
                    on_event=build_observer(args),
                    execution_id=execution_id,
                    skip_auth_check=args.skip_auth_check,
                )
            except KeyboardInterrupt:
                print("\nWorkflow execution interrupted by user")
                state_manager.update_status(execution_id, "failed")
                print(f"Resume with: toolflow resume {execution_id}")
                return 130

        print_result(result, args.json)
        return exit_code_for(result)

    except FileNotFoundError as e:
        logger.error(f"File not found: {e}")
        return 1
    except WorkflowValidationError as e:
        return report_validation_errors(e)
    except ToolflowError as e:
        logger.error(f"Execution failed: {e.message}")
        return 1
    except Exception as e:
        logger.error(f"Unexpected error: {e}", exc_info=True)
        return 1
