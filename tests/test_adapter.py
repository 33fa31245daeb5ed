"""Tests for schema discovery, caching and operation resolution."""

from unittest.mock import Mock

import pytest

from toolflow.connections import ConnectionManager
from toolflow.exceptions import InputValidationError, OperationNotFound
from toolflow.exec.retry import RetryPolicy
from toolflow.providers import ProviderRegistry, SubprocessLaunch
from toolflow.schema import ToolAdapter, operation_tokens
from toolflow.workflow.types import ExactOperation, GoalDescription

from fakes import FakeTransportFactory, tool


CRYPTO_TOOLS = [
    tool("getCryptocurrencyQuotesLatest", "Latest market quote for a cryptocurrency",
         {"symbol": {"type": "string"}}, ["symbol"]),
    tool("getGlobalMetrics", "Global market metrics", {}),
    tool("get-tickets", "Search train tickets",
         {"fromStation": {"type": "string"}, "date": {"type": "string"}}, ["fromStation"]),
]


def generator(*replies):
    gen = Mock(spec=["suggest"])
    gen.suggest.side_effect = list(replies)
    return gen


class TestToolAdapter:
    """Discovery cache and resolution."""

    def setup_method(self):
        self.factory = FakeTransportFactory()
        self.factory.configure("crypto", tools=CRYPTO_TOOLS)
        self.connections = ConnectionManager(retry_policy=RetryPolicy(sleep=Mock()),
                                             transport_factory=self.factory)
        self.registry = ProviderRegistry()
        self.registry.register_from_config({
            "crypto": {"command": "crypto-provider",
                       "parameters": {"rename": {"from": "fromStation"}}},
            "static": {"command": "static-provider",
                       "operations": [{"name": "ping_service"}]},
        })
        self.launch = SubprocessLaunch(command="crypto-provider")
        self.handle = self.connections.acquire("crypto", self.launch)

    def test_discover_is_cached_per_generation(self):
        adapter = ToolAdapter(self.connections, self.registry)
        first = adapter.discover(self.handle)
        second = adapter.discover(self.handle)

        assert [s.name for s in first] == [s.name for s in second]
        assert self.factory.latest("crypto").list_calls == 1

    def test_new_generation_invalidates_cache(self):
        adapter = ToolAdapter(self.connections, self.registry)
        adapter.discover(self.handle)

        self.factory.latest("crypto").ping_ok = False
        new_handle = self.connections.acquire("crypto", self.launch)
        adapter.discover(new_handle)

        assert new_handle.generation != self.handle.generation
        assert self.factory.latest("crypto").list_calls == 1
        assert len(self.factory.created) == 2

    def test_clear_cache(self):
        adapter = ToolAdapter(self.connections, self.registry)
        adapter.discover(self.handle)
        adapter.clear_cache("crypto")
        adapter.discover(self.handle)
        assert self.factory.latest("crypto").list_calls == 2

    def test_static_operations_skip_discovery(self):
        adapter = ToolAdapter(self.connections, self.registry)
        handle = self.connections.acquire("static", SubprocessLaunch(command="static-provider"))
        assert [s.name for s in adapter.discover(handle)] == ["ping_service"]
        assert self.factory.latest("static").list_calls == 0

    def test_exact_operation(self):
        adapter = ToolAdapter(self.connections, self.registry)
        schema, args = adapter.resolve_operation(
            self.handle, ExactOperation("getCryptocurrencyQuotesLatest"), {"symbol": "BTC"})
        assert schema.name == "getCryptocurrencyQuotesLatest"
        assert args == {"symbol": "BTC"}

    def test_exact_operation_tolerates_case_and_separator(self):
        adapter = ToolAdapter(self.connections, self.registry)
        schema, args = adapter.resolve_operation(self.handle, ExactOperation("GET_TICKETS"),
                                                 {"from": "Beijing"})
        assert schema.name == "get-tickets"
        assert args == {"fromStation": "Beijing"}

    def test_unknown_exact_operation(self):
        adapter = ToolAdapter(self.connections, self.registry)
        with pytest.raises(OperationNotFound) as exc_info:
            adapter.resolve_operation(self.handle, ExactOperation("deleteEverything"), {})
        assert "getGlobalMetrics" in exc_info.value.context["available"]

    def test_invalid_input(self):
        adapter = ToolAdapter(self.connections, self.registry)
        with pytest.raises(InputValidationError):
            adapter.resolve_operation(self.handle, ExactOperation("getCryptocurrencyQuotesLatest"), {})

    def test_goal_resolved_by_generator(self):
        gen = generator('{"operation": "getCryptocurrencyQuotesLatest", '
                        '"input": {"symbol": "ETH"}, "reasoning": "quote lookup"}')
        adapter = ToolAdapter(self.connections, self.registry, gen)

        schema, args = adapter.resolve_operation(
            self.handle, GoalDescription("what is ethereum trading at"), "ethereum")

        assert schema.name == "getCryptocurrencyQuotesLatest"
        assert args == {"symbol": "ETH"}
        prompt = gen.suggest.call_args.args[0]
        assert "getGlobalMetrics" in prompt
        assert "what is ethereum trading at" in prompt

    def test_goal_name_only_fallback(self):
        gen = generator("I think you want the global metrics.", "getGlobalMetrics")
        adapter = ToolAdapter(self.connections, self.registry, gen)

        schema, args = adapter.resolve_operation(self.handle, GoalDescription("overall market"), None)

        assert schema.name == "getGlobalMetrics"
        assert gen.suggest.call_count == 2

    def test_goal_keyword_match_without_generator(self):
        adapter = ToolAdapter(self.connections, self.registry)
        schema, args = adapter.resolve_operation(
            self.handle, GoalDescription("search train tickets from Beijing"), {"fromStation": "Beijing"})
        assert schema.name == "get-tickets"

    def test_generator_failure_falls_back_to_keywords(self):
        gen = Mock(spec=["suggest"])
        gen.suggest.side_effect = RuntimeError("model offline")
        adapter = ToolAdapter(self.connections, self.registry, gen)

        schema, _ = adapter.resolve_operation(self.handle, GoalDescription("global metrics overview"), None)
        assert schema.name == "getGlobalMetrics"

    def test_unmatched_goal(self):
        adapter = ToolAdapter(self.connections, self.registry)
        with pytest.raises(OperationNotFound):
            adapter.resolve_operation(self.handle, GoalDescription("book a hotel room"), None)


class TestOperationTokens:
    """Identifier splitting."""

    def test_splits_camel_case_and_separators(self):
        assert operation_tokens("createTweet") == ["create", "tweet"]
        assert operation_tokens("get-tickets") == ["get", "tickets"]
        assert operation_tokens("send_payment") == ["send", "payment"]
        assert operation_tokens("getCryptocurrencyQuotesLatest") == ["get", "cryptocurrency", "quotes", "latest"]
