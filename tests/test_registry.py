"""Tests for the provider registry and parameter normalizers."""

import os
from datetime import date
from unittest.mock import patch

import pytest

from toolflow.exceptions import ProviderNotFound
from toolflow.providers import (
    MappingNormalizer,
    NetworkLaunch,
    NetworkProtocol,
    ProviderDescriptor,
    ProviderRegistry,
    SubprocessLaunch,
    Transport,
)


PROVIDERS = {
    "coinmarketcap-mcp": {
        "command": "npx",
        "args": ["-y", "coinmarketcap-mcp"],
        "env": {"COINMARKETCAP_API_KEY": ""},
        "category": "Market Data",
        "auth_required": True,
        "auth_params": ["COINMARKETCAP_API_KEY"],
        "description": "Crypto market data",
    },
    "12306-mcp": {
        "command": "npx",
        "args": ["12306-mcp"],
        "category": "Travel",
        "parameters": {
            "rename": {"from": "fromStation", "to": "toStation"},
            "date_fields": ["date"],
        },
    },
    "prices": {
        "transport": "network",
        "base_url": "http://prices.test",
        "protocol": "jsonrpc",
        "retries": 2,
        "headers": {"X-Api-Key": "${env.PRICES_KEY}"},
        "category": "market data",
        "operations": [
            {"name": "get_price", "description": "Latest price",
             "inputSchema": {"type": "object", "properties": {"symbol": {"type": "string"}},
                             "required": ["symbol"]}},
        ],
    },
}


class TestProviderRegistry:
    """Registration, lookup and alias resolution."""

    def setup_method(self):
        self.registry = ProviderRegistry()
        with patch.dict(os.environ, {"PRICES_KEY": "from-env"}):
            self.errors = self.registry.register_from_config(PROVIDERS, {"cmc": "coinmarketcap-mcp"})

    def test_register_from_config(self):
        assert self.errors == []
        assert self.registry.list_providers() == ["12306-mcp", "coinmarketcap-mcp", "prices"]

        cmc = self.registry.lookup("coinmarketcap-mcp")
        assert cmc.transport == Transport.SUBPROCESS
        assert isinstance(cmc.launch, SubprocessLaunch)
        assert cmc.launch.argv() == ["npx", "-y", "coinmarketcap-mcp"]
        assert cmc.auth_params == ("COINMARKETCAP_API_KEY",)

    def test_network_provider(self):
        prices = self.registry.lookup("prices")
        assert isinstance(prices.launch, NetworkLaunch)
        assert prices.launch.protocol == NetworkProtocol.JSONRPC
        assert prices.launch.retries == 2
        assert prices.launch.headers == {"X-Api-Key": "from-env"}
        assert [op.name for op in prices.static_operations] == ["get_price"]
        assert prices.static_operations[0].required_parameters == ["symbol"]

    def test_alias_and_historical_names(self):
        assert self.registry.lookup("cmc").name == "coinmarketcap-mcp"
        assert self.registry.lookup("CoinMarketCap-MCP").name == "coinmarketcap-mcp"
        assert self.registry.resolve_alias("coinmarketcap-mcp-service") == "coinmarketcap-mcp"
        assert self.registry.resolve_alias("12306-mcp-server") == "12306-mcp"

    def test_unknown_provider(self):
        with pytest.raises(ProviderNotFound) as exc_info:
            self.registry.lookup("nowhere")
        assert exc_info.value.to_dict()["type"] == "provider_not_found"
        assert self.registry.get("nowhere") is None
        assert not self.registry.exists("nowhere")

    def test_categories_are_case_insensitive(self):
        names = sorted(d.name for d in self.registry.list_by_category("Market Data"))
        assert names == ["coinmarketcap-mcp", "prices"]
        assert ("Travel", 1) in self.registry.categories()

    def test_invalid_config_reports_errors(self):
        registry = ProviderRegistry()
        errors = registry.register_from_config(
            {"broken": {"command": ""}, "secure": {"command": "x", "auth_required": True}},
            {"alias": "missing"},
        )
        assert len(errors) == 3
        assert registry.list_providers() == []

    def test_register_rejects_invalid_descriptor(self):
        descriptor = ProviderDescriptor(name="", transport=Transport.SUBPROCESS,
                                        launch=SubprocessLaunch(command="x"))
        with pytest.raises(ValueError):
            self.registry.register(descriptor)

    def test_normalizer_registered_from_parameters(self):
        normalizer = self.registry.normalizer_for("12306-mcp")
        assert normalizer is not None
        assert self.registry.normalizer_for("prices") is None


class TestMappingNormalizer:
    """Declarative parameter rewrites."""

    def setup_method(self):
        self.normalizer = MappingNormalizer(
            rename={"from": "fromStation"},
            defaults={"trainType": "G"},
            date_fields=["date"],
            today=lambda: date(2024, 5, 1),
        )

    def test_rename_defaults_and_relative_date(self):
        result = self.normalizer("get-tickets", {"from": "Beijing", "date": "tomorrow"})
        assert result == {"fromStation": "Beijing", "trainType": "G", "date": "2024-05-02"}

    def test_date_layouts(self):
        assert self.normalizer.format_date("2024/05/03") == "2024-05-03"
        assert self.normalizer.format_date("20240503") == "2024-05-03"
        assert self.normalizer.format_date(date(2024, 5, 3)) == "2024-05-03"
        assert self.normalizer.format_date("next week") is None

    def test_unparseable_date_left_unchanged(self):
        result = self.normalizer("get-tickets", {"date": "someday"})
        assert result["date"] == "someday"

    def test_existing_target_not_overwritten(self):
        result = self.normalizer("get-tickets", {"from": "A", "fromStation": "B"})
        assert result["fromStation"] == "B"
        assert result["from"] == "A"
