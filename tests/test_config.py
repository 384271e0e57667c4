"""
Tests for configuration and the provider registry.
"""

import pytest
from pydantic import ValidationError

from trustless_oracle.config import (
    OracleConfig,
    ProviderConfig,
    ProviderRegistry,
    Settings,
    build_provider_registry,
    get_bitcoin_api_configs,
    get_bitcoin_rpc_nodes,
    get_sapphire_rpc_urls,
)


def _settings(**values) -> Settings:
    return Settings(_env_file=None, **values)


class TestSettings:
    """Environment-backed settings."""

    def test_defaults(self):
        settings = _settings()
        assert settings.bitcoin_network == "testnet"
        assert settings.confirmations_required == 6
        assert settings.min_agreeing_providers == 1
        assert settings.key_id == "trustless-bridge-oracle"

    def test_from_environment(self, monkeypatch):
        monkeypatch.setenv("CONTRACT_ADDRESS", "0x" + "ab" * 20)
        monkeypatch.setenv("CONFIRMATIONS_REQUIRED", "3")
        settings = _settings()
        assert settings.contract_address == "0x" + "ab" * 20
        assert settings.confirmations_required == 3

    def test_invalid_bitcoin_network(self):
        with pytest.raises(ValidationError):
            _settings(bitcoin_network="signet")

    def test_chain_id_by_network(self):
        assert _settings(network="sapphire").chain_id == 0x5AFE
        assert _settings(network="sapphire-testnet").chain_id == 0x5AFF
        assert _settings(network="unknown").chain_id == 0x5AFD


class TestSapphireUrls:
    def test_override(self):
        assert get_sapphire_rpc_urls("sapphire", "http://a, http://b,") == ["http://a", "http://b"]

    def test_network_defaults(self):
        assert get_sapphire_rpc_urls("sapphire-testnet")[0] == "https://testnet.sapphire.oasis.io"
        assert get_sapphire_rpc_urls("sapphire-localnet") == ["http://localhost:8545"]


class TestProviderLists:
    """Provider lists from JSON or per-network defaults."""

    def test_rpc_nodes_from_json(self):
        raw = '[{"url": "http://n1", "name": "one", "username": "u", "password": "p"}, {"url": "http://n2"}]'
        nodes = get_bitcoin_rpc_nodes("mainnet", raw)
        assert [n.name for n in nodes] == ["one", "rpc-1"]
        assert [n.priority for n in nodes] == [0, 1]
        assert nodes[0].has_credentials
        assert nodes[1].timeout == 10.0

    def test_invalid_json_uses_defaults(self):
        nodes = get_bitcoin_rpc_nodes("testnet", "{not json")
        assert [n.url for n in nodes] == ["https://bitcoin-testnet-rpc.publicnode.com"]

    def test_non_list_uses_defaults(self):
        nodes = get_bitcoin_rpc_nodes("mainnet", '{"url": "http://n1"}')
        assert [n.url for n in nodes] == ["https://bitcoin-mainnet-rpc.publicnode.com"]

    def test_explorer_defaults_for_testnet(self):
        explorers = get_bitcoin_api_configs("testnet")
        assert [e.url for e in explorers] == [
            "https://mempool.space/testnet/api",
            "https://blockstream.info/testnet/api",
        ]
        assert explorers[0].timeout == 5.0

    def test_explorer_defaults_for_mainnet(self):
        assert get_bitcoin_api_configs("mainnet")[0].url == "https://mempool.space/api"

    def test_explorers_from_json(self):
        raw = '[{"url": "https://esplora.test/api", "name": "Esplora", "priority": 3, "timeout": 2500}]'
        (explorer,) = get_bitcoin_api_configs("mainnet", raw)
        assert explorer.kind == "explorer"
        assert explorer.priority == 3
        assert explorer.timeout == 2.5
        assert explorer.retries == 2


class TestProviderRegistry:
    """Validation and ordering."""

    def _provider(self, name: str, priority: int) -> ProviderConfig:
        return ProviderConfig(name=name, kind="explorer", url=f"https://{name}.test", priority=priority)

    def test_sorted_by_priority_stable(self):
        registry = ProviderRegistry([self._provider("b", 2), self._provider("a", 1), self._provider("c", 1)])
        assert [p.name for p in registry] == ["a", "c", "b"]
        assert len(registry) == 3

    def test_duplicate_names(self):
        with pytest.raises(ValueError, match="Duplicate"):
            ProviderRegistry([self._provider("a", 1), self._provider("a", 2)])

    def test_empty(self):
        with pytest.raises(ValueError):
            ProviderRegistry([])

    def test_default_order(self):
        registry = build_provider_registry(_settings(bitcoin_network="mainnet"))
        assert [(p.name, p.kind) for p in registry] == [
            ("public-node", "rpc"),
            ("Mempool.space", "explorer"),
            ("Blockstream", "explorer"),
        ]

    def test_explorer_priority_defaults_to_position(self):
        raw = '[{"url": "https://x.test", "name": "x"}, {"url": "https://y.test", "name": "y"}]'
        explorers = get_bitcoin_api_configs("mainnet", raw)
        assert [e.priority for e in explorers] == [0, 1]
        registry = build_provider_registry(_settings(bitcoin_api_configs=raw))
        assert {p.name for p in registry} == {"public-node", "x", "y"}

    def test_malformed_explorer_entry(self):
        with pytest.raises(ValueError, match="Invalid provider configuration"):
            build_provider_registry(_settings(bitcoin_api_configs='[{"url": "https://x.test", "name": "x", "timeout": "slow"}]'))

    def test_blank_name_rejected(self):
        with pytest.raises(ValidationError):
            ProviderConfig(name=" ", kind="rpc", url="http://node.test")


class TestOracleConfig:
    def test_from_settings(self):
        config = OracleConfig.from_settings(_settings(network="sapphire-testnet", sapphire_rpc_urls="http://rpc.test"))
        assert config.sapphire_rpc_urls == ["http://rpc.test"]
        assert len(config.registry) == 3

    def test_from_env_applies_overrides(self, tmp_path):
        env_file = tmp_path / "oracle.env"
        env_file.write_text("CONTRACT_ADDRESS=0x1111111111111111111111111111111111111111\nBITCOIN_NETWORK=mainnet\n")

        config = OracleConfig.from_env(env_file, bitcoin_network="regtest", network=None, key_id="")

        assert config.settings.contract_address == "0x1111111111111111111111111111111111111111"
        assert config.settings.bitcoin_network == "regtest"
        assert config.settings.key_id == "trustless-bridge-oracle"
