"""
Workflow step executor.

Runs a workflow's steps strictly in order: computes each step's input,
connects to the provider with the user's credentials, resolves and validates
the operation, calls it with retry, classifies and normalizes the result and
persists the step record before moving on. A failing step is recorded and
execution continues; the overall status is decided once every step has run.
"""

import json
import logging
import threading
import time
from datetime import datetime, timezone
from typing import Any, List, Optional

from ..connections import ConnectionManager
from .. import events
from ..events import EventEmitter, Observer
from ..exceptions import ApplicationError, AuthPreflightError, ToolflowError
from ..llm import TextGenerator
from ..providers.registry import ProviderRegistry
from ..schema.adapter import ToolAdapter, operation_tokens
from ..schema.results import ResultClassifier, normalize_result
from ..security.credentials import CredentialInjector, CredentialStore
from ..security.secrets import SecretsManager
from ..state import ExecutionStore, StateManager
from .derivation import InputDeriver
from .reporter import ExecutionReporter, final_result_of
from .types import ExecutionStatus, StepResult, Workflow, WorkflowExecutionResult, WorkflowStep


logger = logging.getLogger(__name__)

CRITICAL_KEYWORDS = frozenset({
    "create", "send", "post", "publish", "tweet", "payment", "transfer",
    "buy", "sell", "trade", "execute", "deploy", "delete", "remove",
})


def is_critical_operation(name: str) -> bool:
    """
    An operation is critical when a word of its name starts or ends with a
    side-effect verb (createTweet, retweet, publishes_article, multisend).
    """
    return any(
        token.startswith(keyword) or token.endswith(keyword)
        for token in operation_tokens(name)
        for keyword in CRITICAL_KEYWORDS
    )


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def parse_static_input(value: Any) -> Any:
    """Static input is used verbatim, except that JSON-looking strings are parsed."""
    if isinstance(value, str):
        stripped = value.strip()
        if stripped[:1] in ("{", "["):
            try:
                return json.loads(stripped)
            except json.JSONDecodeError:
                return value
    return value


class WorkflowExecutor:
    """
    Main workflow execution engine.
    Handles sequential execution, derivation, partial failure and resume.
    """

    def __init__(
        self,
        registry: ProviderRegistry,
        connections: ConnectionManager,
        adapter: ToolAdapter,
        injector: CredentialInjector,
        store: ExecutionStore,
        credential_store: Optional[CredentialStore] = None,
        text_generator: Optional[TextGenerator] = None,
        classifier: Optional[ResultClassifier] = None,
        secrets_manager: Optional[SecretsManager] = None,
    ):
        """
        Initialize workflow executor.

        Args:
            registry: Provider catalogue
            connections: Shared connection manager
            adapter: Schema & tool adapter
            injector: Credential injector
            store: Execution store receiving step records and status
            credential_store: Used for the authentication pre-flight
                (defaults to the injector's store)
            text_generator: Collaborator for derivation and summaries
            classifier: Application-error heuristic for results
            secrets_manager: Masks injected secrets in emitted events
        """
        self.registry = registry
        self.connections = connections
        self.adapter = adapter
        self.injector = injector
        self.store = store
        self.credential_store = credential_store or injector.store
        self.classifier = classifier or ResultClassifier()
        self.secrets_manager = secrets_manager or injector.secrets_manager
        self.deriver = InputDeriver(text_generator)
        self.reporter = ExecutionReporter(text_generator)

    def execute(
        self,
        workflow: Workflow,
        user_id: str,
        on_event: Optional[Observer] = None,
        execution_id: Optional[str] = None,
        skip_auth_check: bool = False,
        cancel_event: Optional[threading.Event] = None,
    ) -> WorkflowExecutionResult:
        """
        Execute every step of the workflow.

        Args:
            workflow: Workflow to run
            user_id: User whose credentials are injected
            on_event: Progress observer
            execution_id: Identifier to record under (generated if omitted)
            skip_auth_check: Skip the verified-credential pre-flight
            cancel_event: Set to stop before the next step

        Returns:
            Execution result with one record per step

        Raises:
            PersistenceError: If progress cannot be recorded
        """
        execution_id = execution_id or StateManager.generate_execution_id()
        return self._run(workflow, user_id, execution_id, [], on_event, skip_auth_check, cancel_event)

    def resume(
        self,
        execution_id: str,
        workflow: Workflow,
        user_id: str,
        on_event: Optional[Observer] = None,
        skip_auth_check: bool = False,
        cancel_event: Optional[threading.Event] = None,
    ) -> WorkflowExecutionResult:
        """
        Continue a persisted execution after its last recorded step.

        Steps recorded as cancelled never ran and are executed again.
        """
        state = self.store.load(execution_id)
        kept: List[StepResult] = []
        for record in state.steps:
            step = StepResult.from_dict(record)
            if step.error and step.error.get("type") == "cancelled":
                break
            kept.append(step)

        logger.info(f"Resuming '{execution_id}' after step {len(kept)} of {len(workflow.steps)}")
        return self._run(workflow, user_id, execution_id, kept, on_event, skip_auth_check, cancel_event)

    def _run(
        self,
        workflow: Workflow,
        user_id: str,
        execution_id: str,
        recorded: List[StepResult],
        on_event: Optional[Observer],
        skip_auth_check: bool,
        cancel_event: Optional[threading.Event],
    ) -> WorkflowExecutionResult:
        emitter = EventEmitter(execution_id, on_event, self.secrets_manager)
        emitter.emit(events.EXECUTION_START, task=workflow.task, total_steps=len(workflow.steps))

        if not skip_auth_check:
            refused = self._auth_preflight(workflow, user_id, execution_id, emitter)
            if refused is not None:
                return refused

        self.store.update_status(execution_id, ExecutionStatus.RUNNING.value)
        emitter.emit(events.STATUS_UPDATE, status=ExecutionStatus.RUNNING.value)

        steps = list(recorded)
        previous = final_result_of(steps)
        cancelled = False

        for step in workflow.steps[len(recorded):]:
            if cancel_event is not None and cancel_event.is_set():
                cancelled = True
                result = self._cancelled_result(step)
            else:
                result = self._execute_step(step, user_id, previous, workflow.task, emitter)

            self._record(execution_id, result)
            steps.append(result)

            if result.success:
                previous = result.normalized_result
                emitter.emit(events.STEP_COMPLETE, step=result.step_number, success=True,
                             operation=result.operation, result=result.normalized_result)
            else:
                emitter.emit(events.STEP_ERROR, step=result.step_number,
                             operation=result.operation, error=result.error_message)

        emitter.emit(events.GENERATING_SUMMARY, message="Generating result summary...")
        summary = self.reporter.summarize(
            workflow.task, steps,
            on_chunk=lambda chunk: emitter.emit(events.SUMMARY_CHUNK, content=chunk),
            on_fallback=lambda text: emitter.emit(events.SUMMARY_REPLACED, content=text),
        )

        result = self.reporter.build_result(execution_id, steps, summary=summary)
        result.error = _failure_reason(result, cancelled)

        self.store.update_result(execution_id, result.status.value, {
            "final_result": result.final_result,
            "summary": result.summary,
            "error": result.error,
        })
        emitter.emit(events.WORKFLOW_COMPLETE, status=result.status.value,
                     success=result.status == ExecutionStatus.COMPLETED)
        emitter.emit(events.TASK_COMPLETE, execution_id=execution_id)

        logger.info(f"Execution '{execution_id}' finished: {result.status.value} "
                    f"({len(result.successful_steps)}/{len(steps)} steps succeeded)")
        return result

    def _auth_preflight(
        self,
        workflow: Workflow,
        user_id: str,
        execution_id: str,
        emitter: EventEmitter,
    ) -> Optional[WorkflowExecutionResult]:
        """Refuse the whole workflow when a required credential is unverified."""
        if self.credential_store is None:
            return None

        missing_fn = getattr(self.credential_store, "missing_credentials", None)
        if missing_fn is not None:
            missing = missing_fn(workflow, user_id, self.registry)
        elif self.credential_store.is_every_required_credential_verified(workflow, user_id, self.registry):
            missing = []
        else:
            missing = ["<unknown>"]

        if not missing:
            return None

        error = AuthPreflightError(
            f"Missing verified credentials for: {', '.join(missing)}",
            {"providers": missing, "user_id": user_id},
        )
        logger.error(f"Execution '{execution_id}' refused: {error.message}")
        self.store.update_result(execution_id, ExecutionStatus.FAILED.value, {"error": error.message})
        emitter.emit(events.ERROR, message="Task execution failed", details=error.message,
                     error=error.to_dict())
        return WorkflowExecutionResult(
            execution_id=execution_id,
            status=ExecutionStatus.FAILED,
            steps=[],
            error=error.message,
        )

    def _step_input(self, step: WorkflowStep, previous: Any, task: str) -> Any:
        if step.derive_from_previous:
            source = previous if previous is not None else task
            return self.deriver.derive(source, step, task)
        return parse_static_input(step.input)

    def _execute_step(
        self,
        step: WorkflowStep,
        user_id: str,
        previous: Any,
        task: str,
        emitter: EventEmitter,
    ) -> StepResult:
        """Run one step; every failure becomes a failed StepResult."""
        started_at = _now()
        start = time.monotonic()
        operation = step.operation_label
        raw = None

        emitter.emit(events.STEP_START, step=step.step_number, provider=step.provider, operation=operation)
        logger.info(f"Step {step.step_number}: {step.provider} -> {operation}")

        try:
            candidate = self._step_input(step, previous, task)

            descriptor = self.registry.lookup(step.provider)
            launch = self.injector.resolve(descriptor, user_id)
            handle = self.connections.acquire(descriptor.name, launch)

            schema, arguments = self.adapter.resolve_operation(handle, step.operation, candidate)
            operation = schema.name

            raw = self.connections.call(handle, schema.name, arguments)

            classification = self.classifier.classify(raw)
            if not classification.success:
                raise ApplicationError(
                    classification.error or "Provider reported a failure",
                    {"provider": descriptor.name, "operation": schema.name},
                )

            return StepResult(
                step_number=step.step_number,
                success=True,
                provider=descriptor.name,
                operation=operation,
                raw_result=raw,
                normalized_result=normalize_result(raw),
                duration_ms=int((time.monotonic() - start) * 1000),
                critical=is_critical_operation(operation),
                started_at=started_at,
                completed_at=_now(),
            )
        except ToolflowError as e:
            logger.error(f"Step {step.step_number} execution failed: {e.message}")
            error = e.to_dict()
        except Exception as e:
            # Providers are untrusted; a malformed reply must not abort the workflow
            logger.exception(f"Step {step.step_number} raised unexpectedly")
            error = {"type": "unexpected_error", "message": str(e), "context": {}}

        return StepResult(
            step_number=step.step_number,
            success=False,
            provider=step.provider,
            operation=operation,
            raw_result=raw,
            error=error,
            duration_ms=int((time.monotonic() - start) * 1000),
            critical=is_critical_operation(operation),
            started_at=started_at,
            completed_at=_now(),
        )

    @staticmethod
    def _cancelled_result(step: WorkflowStep) -> StepResult:
        now = _now()
        return StepResult(
            step_number=step.step_number,
            success=False,
            provider=step.provider,
            operation=step.operation_label,
            error={"type": "cancelled", "message": "Execution cancelled before this step ran",
                   "context": {}},
            duration_ms=0,
            started_at=now,
            completed_at=now,
        )

    def _record(self, execution_id: str, result: StepResult) -> None:
        """Persist a step record; failures propagate and abort the execution."""
        payload = result.to_dict()
        payload.pop("step_number", None)
        payload.pop("success", None)
        self.store.save_step_result(execution_id, result.step_number, result.success, payload)


def _failure_reason(result: WorkflowExecutionResult, cancelled: bool) -> Optional[str]:
    if result.status == ExecutionStatus.COMPLETED:
        return None
    if cancelled:
        return "Execution cancelled"
    critical = [s for s in result.failed_steps if s.critical]
    if critical:
        step = critical[0]
        return f"Critical step {step.step_number} ({step.operation}) failed: {step.error_message}"
    if result.status == ExecutionStatus.FAILED:
        return "No step succeeded"
    return None
