"""Resume command implementation."""

import json
import logging
import sys
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


def resume_workflow(args: Namespace) -> int:
    """Resume an interrupted workflow run.

    Steps already recorded are kept; execution continues with the first step
    that has no record (or was cancelled before it ran).

    Returns:
        Exit code, with the same meaning as for ``run``
    """
    secrets_manager = SecretsManager()
    configure_logging(args, secrets_manager)
    run_id = args.run_id

    try:
        try:
            config = load_provider_config(args.providers)
        except WorkflowValidationError as e:
            return report_validation_errors(e)
        settings = apply_overrides(config.settings, args)

        state_manager = StateManager(
            workspace=settings.workspace,
            backup_enabled=args.backup_state,
            debug=args.debug,
            secrets_manager=secrets_manager,
        )
        if not state_manager.run_root(run_id).exists():
            logger.error(f"Run directory not found: {state_manager.run_root(run_id)}")
            print(f"Error: No run found with ID '{run_id}'", file=sys.stderr)
            return 1

        try:
            state = state_manager.load(run_id)
        except (FileNotFoundError, json.JSONDecodeError, KeyError) as e:
            logger.error(f"Failed to load state: {e}")
            if not args.repair:
                print(f"Error: Failed to load state: {e}", file=sys.stderr)
                print("Use --repair to attempt recovery from backups.", file=sys.stderr)
                return 1
            logger.info("Attempting to repair state from backups")
            if not state_manager.attempt_repair(run_id):
                print("Error: Failed to repair state from backups", file=sys.stderr)
                return 1
            print("Successfully repaired state from backup")
            state = state_manager.load(run_id)

        if not state.workflow_file:
            print("Error: No workflow file recorded in state", file=sys.stderr)
            return 1

        workflow_path = Path(state.workflow_file)
        if not workflow_path.exists():
            print(f"Error: Workflow file not found: {state.workflow_file}", file=sys.stderr)
            return 1

        try:
            workflow = WorkflowLoader().load(workflow_path)
        except WorkflowValidationError as e:
            return report_validation_errors(e)

        if not args.force_restart and not state_manager.validate_checksum(run_id, str(workflow_path)):
            print("Error: Workflow has been modified since the run started.", file=sys.stderr)
            print("Use --force-restart to ignore this and start a new run.", file=sys.stderr)
            return 1

        if state.user_id and state.user_id != args.user:
            logger.warning(f"Run {run_id} was started for user '{state.user_id}', resuming as '{args.user}'")

        credential_store = load_credential_store(args.credentials)

        with build_engine(config, credential_store, state_manager, secrets_manager) as engine:
            observer = build_observer(args)
            if args.force_restart:
                new_run_id = state_manager.generate_execution_id()
                print(f"Force restarting workflow with new run ID: {new_run_id}")
                print(f"(Ignoring existing state from run {run_id})")
                state_manager.initialize(
                    new_run_id,
                    workflow_file=str(workflow_path),
                    user_id=args.user,
                    task=workflow.task,
                    workflow_name=workflow.name,
                )
                result = engine.execute(workflow, args.user, on_event=observer, execution_id=new_run_id,
                                        skip_auth_check=args.skip_auth_check)
            else:
                if state.status == "completed":
                    print(f"Run {run_id} has already completed successfully")
                    return 0
                print(f"Resuming run {run_id} after step {state.last_step_number()}")
                result = engine.resume(run_id, workflow, args.user, on_event=observer,
                                       skip_auth_check=args.skip_auth_check)

        print_result(result, args.json)
        return exit_code_for(result)

    except KeyboardInterrupt:
        print("\nWorkflow execution interrupted by user")
        return 130
    except FileNotFoundError as e:
        logger.error(f"File not found: {e}")
        return 1
    except ToolflowError as e:
        logger.error(f"Resume failed: {e.message}")
        return 1
    except Exception as e:
        logger.error(f"Workflow execution failed: {e}", exc_info=True)
        return 1
