"""End-to-end tests for workflow execution through the Engine."""

import json
import shutil
import tempfile
import threading
import time
from pathlib import Path
from unittest.mock import Mock

import pytest

from toolflow.engine import Engine, EngineSettings
from toolflow.events import STEP_COMPLETE
from toolflow.exceptions import PersistenceError
from toolflow.providers import ProviderRegistry
from toolflow.security import Credential, InMemoryCredentialStore
from toolflow.workflow.executor import is_critical_operation, parse_static_input
from toolflow.workflow.types import ExactOperation, ExecutionStatus, GoalDescription, Workflow, WorkflowStep

from fakes import FakeTransportFactory, broken_pipe, text_result, tool


PROVIDERS = {
    "weather": {"command": "weather-provider", "category": "Weather"},
    "prices": {"command": "price-provider"},
    "reports": {"command": "report-provider"},
    "twitter": {"command": "twitter-provider"},
    "cmc": {
        "command": "cmc-provider",
        "env": {"CMC_API_KEY": ""},
        "auth_required": True,
        "auth_params": ["CMC_API_KEY"],
    },
}

WEATHER_TOOLS = [
    tool("get_weather", "Current weather for a city", {"city": {"type": "string"}}, ["city"]),
    tool("get_forecast", "Multi-day forecast",
         {"city": {"type": "string"}, "days": {"type": "integer", "default": 3}}, ["city"]),
]


def step(number, provider, operation, input=None, derive=False):
    ref = operation if isinstance(operation, GoalDescription) else ExactOperation(operation)
    return WorkflowStep(step_number=number, provider=provider, operation=ref,
                        input=input, derive_from_previous=derive)


class ExecutorTestCase:
    """Shared engine wiring with in-memory providers."""

    def setup_method(self):
        self.workspace = Path(tempfile.mkdtemp())
        self.factory = FakeTransportFactory()
        self.factory.configure("weather", tools=WEATHER_TOOLS, handlers={
            "get_weather": lambda args: text_result(f"sunny in {args['city']}"),
            "get_forecast": lambda args: text_result(f"{args['days']} days of sun in {args['city']}"),
        })
        self.factory.configure("prices", tools=[tool("get_price", "Latest price", {"symbol": {"type": "string"}})],
                               handlers={"get_price": {"price": 42}})
        self.factory.configure("reports", tools=[tool("format_report", "Format a report",
                                                      {"text": {"type": "string"}}, ["text"])],
                               handlers={"format_report": lambda args: text_result(f"report: {args['text']}")})
        self.factory.configure("twitter", tools=[tool("createTweet", "Post a tweet",
                                                      {"text": {"type": "string"}}, ["text"])],
                               handlers={"createTweet": {"isError": True,
                                                         "content": [{"type": "text", "text": "rate limited"}]}})
        self.factory.configure("cmc", tools=[tool("get_quote", "Quote", {"symbol": {"type": "string"}})],
                               setup=self._cmc_handlers)

        self.registry = ProviderRegistry()
        assert self.registry.register_from_config(PROVIDERS) == []
        self.credentials = InMemoryCredentialStore()
        self.events = []

    def teardown_method(self):
        shutil.rmtree(self.workspace)

    @staticmethod
    def _cmc_handlers(transport):
        transport.handlers["get_quote"] = lambda args: text_result(
            f"quote fetched with {transport.launch.env['CMC_API_KEY']}")

    def engine(self, text_generator=None, store=None):
        return Engine(
            self.registry,
            settings=EngineSettings(backoff_unit_sec=0, workspace=self.workspace),
            credential_store=self.credentials,
            text_generator=text_generator,
            store=store,
            transport_factory=self.factory,
        )

    def observe(self, event):
        self.events.append(event)

    def event_names(self):
        return [e.event for e in self.events]

    def state(self, engine, execution_id):
        return json.loads(engine.store.state_file(execution_id).read_text())


class TestSequentialExecution(ExecutorTestCase):
    """Happy paths and event stream."""

    def test_single_step_completes(self):
        workflow = Workflow(task="Weather in Paris", steps=[step(1, "weather", "get_weather", {"city": "Paris"})])

        with self.engine() as engine:
            result = engine.execute(workflow, "alice", on_event=self.observe, execution_id="exec-1")

        assert result.status == ExecutionStatus.COMPLETED
        assert len(result.steps) == 1
        assert result.steps[0].normalized_result == "sunny in Paris"
        assert "sunny" in result.final_result
        assert result.error is None
        assert result.summary.startswith("Task execution completed, executed 1 steps in total")
        assert self.event_names() == [
            "execution_start", "status_update", "step_start", "step_complete",
            "generating_summary", "workflow_complete", "task_complete",
        ]

        persisted = self.state(engine, "exec-1")
        assert persisted["status"] == "completed"
        assert persisted["steps"][0]["step_number"] == 1
        assert persisted["steps"][0]["success"] is True

    def test_scalar_input_binds_to_single_parameter(self):
        workflow = Workflow(steps=[step(1, "weather", "get_weather", "Paris")])
        result = self.engine().execute(workflow, "alice")
        assert result.final_result == "sunny in Paris"

    def test_json_string_input_is_parsed(self):
        assert parse_static_input('{"city": "Oslo"}') == {"city": "Oslo"}
        assert parse_static_input("{not json") == "{not json"

        workflow = Workflow(steps=[step(1, "weather", "get_weather", '{"city": "Oslo"}')])
        assert self.engine().execute(workflow, "alice").final_result == "sunny in Oslo"

    def test_goal_step_resolved_locally(self):
        workflow = Workflow(steps=[step(1, "weather", GoalDescription("multi-day forecast"), {"city": "Rome"})])
        result = self.engine().execute(workflow, "alice")
        assert result.steps[0].operation == "get_forecast"
        assert result.final_result == "3 days of sun in Rome"

    def test_derived_input_uses_generator_output(self):
        generator = Mock(spec=["suggest"])
        generator.suggest.side_effect = ['{"text": "BTC at 42"}', "Bitcoin trades at 42."]
        workflow = Workflow(task="Report the BTC price", steps=[
            step(1, "prices", "get_price", {"symbol": "BTC"}),
            step(2, "reports", "format_report", derive=True),
        ])

        result = self.engine(generator).execute(workflow, "alice", on_event=self.observe)

        assert result.status == ExecutionStatus.COMPLETED
        assert self.factory.latest("reports").calls == [("format_report", {"text": "BTC at 42"})]
        derivation_prompt = generator.suggest.call_args_list[0].args[0]
        assert '"price": 42' in derivation_prompt
        assert result.summary == "Bitcoin trades at 42."
        assert "summary_chunk" in self.event_names()

    def test_broken_summary_stream_is_replaced(self):
        generator = Mock(spec=["suggest", "stream"])

        def broken_stream(prompt):
            yield "The weather "
            raise ConnectionError("stream reset")

        generator.stream.side_effect = broken_stream
        workflow = Workflow(task="Check weather", steps=[step(1, "weather", "get_weather", {"city": "Oslo"})])

        result = self.engine(generator).execute(workflow, "alice", on_event=self.observe)

        assert result.status == ExecutionStatus.COMPLETED
        assert result.summary.startswith("Task execution completed")
        names = self.event_names()
        assert names.index("summary_chunk") < names.index("summary_replaced")
        replaced = [e for e in self.events if e.event == "summary_replaced"][0]
        assert replaced.data["content"] == result.summary

    def test_derivation_without_generator_passes_previous_result(self):
        workflow = Workflow(steps=[
            step(1, "weather", "get_weather", {"city": "Paris"}),
            step(2, "reports", "format_report", derive=True),
        ])
        result = self.engine().execute(workflow, "alice")
        assert result.final_result == "report: sunny in Paris"

    def test_transport_failure_is_retried(self):
        self.factory.configure("weather", tools=WEATHER_TOOLS,
                               handlers={"get_weather": text_result("sunny")},
                               setup=lambda t: t.failures.append(broken_pipe()))
        workflow = Workflow(steps=[step(1, "weather", "get_weather", {"city": "Paris"})])

        result = self.engine().execute(workflow, "alice")

        assert result.status == ExecutionStatus.COMPLETED
        assert len(self.factory.latest("weather").calls) == 2

    def test_connections_stay_warm_across_workflows(self):
        workflow = Workflow(steps=[step(1, "weather", "get_weather", {"city": "Paris"})])
        engine = self.engine()
        engine.execute(workflow, "alice")
        engine.execute(workflow, "alice")
        assert len(self.factory.for_provider("weather")) == 1
        assert self.factory.latest("weather").list_calls == 1
        assert engine.health_all()["weather"] is True
        engine.shutdown()
        assert self.factory.latest("weather").closed


class TestFailureHandling(ExecutorTestCase):
    """Partial failure and status aggregation."""

    def test_critical_failure_fails_workflow(self):
        workflow = Workflow(steps=[
            step(1, "weather", "get_weather", {"city": "Paris"}),
            step(2, "twitter", "createTweet", {"text": "It is sunny"}),
        ])

        result = self.engine().execute(workflow, "alice", on_event=self.observe)

        assert result.status == ExecutionStatus.FAILED
        failed = result.steps[1]
        assert failed.critical
        assert failed.error["type"] == "application_error"
        assert "Critical step 2 (createTweet) failed" in result.error
        assert "step_error" in self.event_names()

    def test_non_critical_failure_is_partial(self):
        workflow = Workflow(steps=[
            step(1, "weather", "get_weather", {"city": "Paris"}),
            step(2, "weather", "get_weather", {}),
            step(3, "weather", "get_forecast", {"city": "Paris", "days": "2"}),
        ])

        result = self.engine().execute(workflow, "alice")

        assert result.status == ExecutionStatus.PARTIAL
        assert [s.step_number for s in result.steps] == [1, 2, 3]
        assert [s.success for s in result.steps] == [True, False, True]
        assert result.steps[1].error["type"] == "input_validation_error"
        assert result.final_result == "2 days of sun in Paris"

    def test_every_step_failing_is_failed(self):
        workflow = Workflow(steps=[step(1, "nowhere", "get_weather", {"city": "Paris"})])

        result = self.engine().execute(workflow, "alice")

        assert result.status == ExecutionStatus.FAILED
        assert result.steps[0].error["type"] == "provider_not_found"
        assert result.error == "No step succeeded"

    def test_unknown_operation(self):
        workflow = Workflow(steps=[step(1, "weather", "get_tides", {"city": "Brest"})])
        result = self.engine().execute(workflow, "alice")
        assert result.steps[0].error["type"] == "operation_not_found"

    def test_persistence_failure_aborts(self):
        store = Mock()
        store.save_step_result.side_effect = PersistenceError("disk full")
        workflow = Workflow(steps=[step(1, "weather", "get_weather", {"city": "Paris"})])

        with pytest.raises(PersistenceError):
            self.engine(store=store).execute(workflow, "alice")

    def test_failing_observer_does_not_affect_execution(self):
        workflow = Workflow(steps=[step(1, "weather", "get_weather", {"city": "Paris"})])
        observer = Mock(side_effect=RuntimeError("listener crashed"))
        result = self.engine().execute(workflow, "alice", on_event=observer)
        assert result.status == ExecutionStatus.COMPLETED

    def test_critical_operation_names(self):
        assert is_critical_operation("createTweet")
        assert is_critical_operation("send_payment")
        assert is_critical_operation("delete-file")
        assert not is_critical_operation("get_weather")
        assert not is_critical_operation("get_forecast")
        assert not is_critical_operation("format_report")
        assert not is_critical_operation("getCryptocurrencyQuotesLatest")

    def test_compound_and_inflected_critical_names(self):
        for name in ("retweet", "repost", "posttweet", "multisend", "publishes_article"):
            assert is_critical_operation(name), name

    def test_failed_retweet_fails_workflow(self):
        self.factory.configure("twitter", tools=[tool("retweet", "Retweet a post",
                                                      {"id": {"type": "string"}}, ["id"])],
                               handlers={"retweet": {"isError": True,
                                                     "content": [{"type": "text", "text": "rate limited"}]}})
        workflow = Workflow(steps=[
            step(1, "weather", "get_weather", {"city": "Paris"}),
            step(2, "twitter", "retweet", {"id": "42"}),
        ])
        result = self.engine().execute(workflow, "alice")
        assert result.steps[1].critical
        assert result.status == ExecutionStatus.FAILED


class TestCredentialsAndAuth(ExecutorTestCase):
    """Authentication pre-flight and credential injection."""

    def test_unverified_credentials_refuse_workflow(self):
        workflow = Workflow(steps=[step(1, "cmc", "get_quote", {"symbol": "BTC"})])

        with self.engine() as engine:
            result = engine.execute(workflow, "alice", on_event=self.observe, execution_id="exec-auth")

        assert result.status == ExecutionStatus.FAILED
        assert result.steps == []
        assert "cmc" in result.error
        assert self.factory.created == []
        assert self.event_names() == ["execution_start", "error"]
        persisted = self.state(engine, "exec-auth")
        assert persisted["status"] == "failed"
        assert persisted["steps"] == []

    def test_skip_auth_check_runs_anyway(self):
        workflow = Workflow(steps=[step(1, "cmc", "get_quote", {"symbol": "BTC"})])
        result = self.engine().execute(workflow, "alice", skip_auth_check=True)
        assert result.status == ExecutionStatus.COMPLETED
        assert result.final_result == "quote fetched with "

    def test_credentials_injected_and_masked(self):
        self.credentials.add(Credential("alice", "cmc", is_verified=True,
                                        auth_data={"CMC_API_KEY": "cmc-live-key"}))
        workflow = Workflow(steps=[step(1, "cmc", "get_quote", {"symbol": "BTC"})])

        with self.engine() as engine:
            result = engine.execute(workflow, "alice", on_event=self.observe, execution_id="exec-cred")

        assert result.status == ExecutionStatus.COMPLETED
        assert self.factory.latest("cmc").launch.env["CMC_API_KEY"] == "cmc-live-key"
        completed = [e for e in self.events if e.event == STEP_COMPLETE][0]
        assert completed.data["result"] == "quote fetched with ***"
        assert "cmc-live-key" not in engine.store.state_file("exec-cred").read_text()

    def test_concurrent_workflows_use_their_own_credentials(self):
        seen = []

        def record_key(transport):
            def get_quote(args):
                seen.append((args["symbol"], transport.launch.env["CMC_API_KEY"]))
                time.sleep(0.01)
                return text_result("quote")
            transport.handlers["get_quote"] = get_quote

        self.factory.configure("cmc", tools=[tool("get_quote", "Quote", {"symbol": {"type": "string"}})],
                               setup=record_key)
        for user in ("alice", "bob"):
            self.credentials.add(Credential(user, "cmc", is_verified=True,
                                            auth_data={"CMC_API_KEY": f"{user}-key"}))

        results = {}
        with self.engine() as engine:
            def run(user):
                workflow = Workflow(steps=[step(n, "cmc", "get_quote", {"symbol": user}) for n in (1, 2, 3)])
                results[user] = engine.execute(workflow, user, execution_id=f"exec-{user}")

            threads = [threading.Thread(target=run, args=(user,)) for user in ("alice", "bob")]
            for thread in threads:
                thread.start()
            for thread in threads:
                thread.join(timeout=10)

        assert results["alice"].status == ExecutionStatus.COMPLETED
        assert results["bob"].status == ExecutionStatus.COMPLETED
        assert len(seen) == 6
        assert all(key == f"{symbol}-key" for symbol, key in seen)


class TestCancellationAndResume(ExecutorTestCase):
    """Stopping between steps and continuing later."""

    def workflow(self):
        return Workflow(task="Weather report", steps=[
            step(1, "weather", "get_weather", {"city": "Paris"}),
            step(2, "weather", "get_forecast", {"city": "Paris"}),
            step(3, "reports", "format_report", derive=True),
        ])

    def test_cancel_records_remaining_steps(self):
        cancel = threading.Event()

        def observer(event):
            self.observe(event)
            if event.event == STEP_COMPLETE and event.data["step"] == 1:
                cancel.set()

        result = self.engine().execute(self.workflow(), "alice", on_event=observer,
                                       execution_id="exec-cancel", cancel_event=cancel)

        assert [s.step_number for s in result.steps] == [1, 2, 3]
        assert [s.error["type"] for s in result.steps[1:]] == ["cancelled", "cancelled"]
        assert result.status == ExecutionStatus.PARTIAL
        assert result.error == "Execution cancelled"
        assert len(self.factory.latest("weather").calls) == 1

    def test_resume_runs_cancelled_steps(self):
        cancel = threading.Event()
        cancel.set()
        engine = self.engine()
        first = engine.execute(self.workflow(), "alice", execution_id="exec-resume", cancel_event=cancel)
        assert all(s.error["type"] == "cancelled" for s in first.steps)

        result = engine.resume("exec-resume", self.workflow(), "alice")

        assert result.status == ExecutionStatus.COMPLETED
        assert [s.step_number for s in result.steps] == [1, 2, 3]
        assert result.final_result == "report: 3 days of sun in Paris"
        persisted = self.state(engine, "exec-resume")
        assert [s["success"] for s in persisted["steps"]] == [True, True, True]

    def test_resume_keeps_recorded_steps(self):
        engine = self.engine()
        cancel = threading.Event()

        def observer(event):
            if event.event == STEP_COMPLETE and event.data["step"] == 2:
                cancel.set()

        engine.execute(self.workflow(), "alice", on_event=observer,
                       execution_id="exec-keep", cancel_event=cancel)
        calls_before = len(self.factory.latest("weather").calls)

        result = engine.resume("exec-keep", self.workflow(), "alice")

        assert result.status == ExecutionStatus.COMPLETED
        assert len(self.factory.latest("weather").calls) == calls_before
        assert self.factory.latest("reports").calls == [("format_report", {"text": "3 days of sun in Paris"})]
