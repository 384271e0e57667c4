"""
Configuration management for the Trustless Bridge Oracle.

Settings come from the environment (and `.env`). Bitcoin provider lists may
be supplied as JSON; invalid JSON falls back to the per-network defaults.
"""

import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterator, Literal, Optional

import structlog
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = structlog.get_logger()


SAPPHIRE_RPC_URLS: dict[str, list[str]] = {
    "mainnet": ["https://sapphire.oasis.io", "https://sapphire-rpc.oasis.io"],
    "testnet": ["https://testnet.sapphire.oasis.io", "https://testnet.sapphire-rpc.oasis.io"],
    "localnet": ["http://localhost:8545"],
}

SAPPHIRE_CHAIN_IDS: dict[str, int] = {
    "mainnet": 0x5AFE,
    "testnet": 0x5AFF,
    "localnet": 0x5AFD,
}

# CLI network name -> Sapphire deployment
NETWORK_ALIASES: dict[str, str] = {
    "sapphire": "mainnet",
    "sapphire-mainnet": "mainnet",
    "sapphire-testnet": "testnet",
    "sapphire-localnet": "localnet",
}

DEFAULT_BITCOIN_RPC_NODES: dict[str, list[dict[str, Any]]] = {
    "mainnet": [
        {"url": "https://bitcoin-mainnet-rpc.publicnode.com", "name": "public-node"},
    ],
    "testnet": [
        {"url": "https://bitcoin-testnet-rpc.publicnode.com", "name": "public-node"},
    ],
}

DEFAULT_BITCOIN_API_CONFIGS: list[dict[str, Any]] = [
    {"url": "https://mempool.space/api", "name": "Mempool.space", "priority": 1, "timeout": 5000, "retries": 2},
    {"url": "https://blockstream.info/api", "name": "Blockstream", "priority": 2, "timeout": 5000, "retries": 2},
]

BITCOIN_NETWORKS = ("mainnet", "testnet", "regtest")


class Settings(BaseSettings):
    """
    Oracle configuration settings.

    All settings can be overridden via environment variables.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Bridge contract
    contract_address: str = Field(default="", description="Bridge contract address")
    network: str = Field(
        default="sapphire-localnet",
        description="EVM network (sapphire, sapphire-testnet, sapphire-localnet)",
    )
    sapphire_rpc_urls: str = Field(default="", description="Comma-separated Sapphire RPC URLs")

    # Bitcoin
    bitcoin_network: str = Field(default="testnet", description="Bitcoin network (mainnet, testnet, regtest)")
    bitcoin_rpc_nodes: str = Field(default="", description="JSON list of Bitcoin RPC nodes")
    bitcoin_api_configs: str = Field(default="", description="JSON list of Esplora API configurations")

    # Oracle account
    # Only for testing; production keys come from the key-custody service.
    oracle_secret: Optional[str] = Field(default=None, description="Oracle account secret key")
    kms_url: str = Field(default="", description="Override the ROFL appd service URL")
    key_id: str = Field(default="trustless-bridge-oracle", description="Oracle secret key id on KMS")

    # Oracle loop
    poll_interval_seconds: int = Field(default=20, ge=1)
    confirmations_required: int = Field(default=6, ge=1)
    min_agreeing_providers: int = Field(default=1, ge=1)

    # Database
    database_url: str = "sqlite:///./oracle.db"

    log_level: str = "INFO"

    @field_validator("bitcoin_network")
    @classmethod
    def _check_bitcoin_network(cls, v: str) -> str:
        if v not in BITCOIN_NETWORKS:
            raise ValueError(f"bitcoin_network must be one of {BITCOIN_NETWORKS}")
        return v

    @property
    def sapphire_network(self) -> str:
        return NETWORK_ALIASES.get(self.network, self.network)

    @property
    def chain_id(self) -> int:
        return SAPPHIRE_CHAIN_IDS.get(self.sapphire_network, SAPPHIRE_CHAIN_IDS["localnet"])


class ProviderConfig(BaseModel):
    """A single Bitcoin data provider: a node RPC endpoint or an Esplora explorer."""

    model_config = ConfigDict(frozen=True)

    name: str
    kind: Literal["rpc", "explorer"]
    url: str
    username: str = ""
    password: str = ""
    wallet: Optional[str] = None
    priority: int = 0
    timeout: float = 5.0  # seconds
    retries: int = Field(default=2, ge=0)

    @field_validator("name", "url")
    @classmethod
    def _non_empty(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("must not be empty")
        return v.strip()

    @property
    def has_credentials(self) -> bool:
        return bool(self.username and self.password)


class ProviderRegistry:
    """Immutable, priority-ordered set of providers (lower priority value first)."""

    def __init__(self, providers: list[ProviderConfig]):
        if not providers:
            raise ValueError("At least one Bitcoin provider must be configured")

        names = [p.name for p in providers]
        duplicates = sorted({n for n in names if names.count(n) > 1})
        if duplicates:
            raise ValueError(f"Duplicate provider names: {', '.join(duplicates)}")

        # sorted() is stable, so equal priorities keep their configured order
        self._providers = tuple(sorted(providers, key=lambda p: p.priority))

    def __iter__(self) -> Iterator[ProviderConfig]:
        return iter(self._providers)

    def __len__(self) -> int:
        return len(self._providers)


def get_sapphire_rpc_urls(network: str, override: str = "") -> list[str]:
    """RPC URLs for the EVM side, from a comma-separated override or the network defaults."""
    if override:
        urls = [u.strip() for u in override.split(",") if u.strip()]
        if urls:
            return urls
    deployment = NETWORK_ALIASES.get(network, network)
    return list(SAPPHIRE_RPC_URLS.get(deployment, SAPPHIRE_RPC_URLS["localnet"]))


def _parse_json_list(raw: str, setting: str) -> Optional[list[dict[str, Any]]]:
    if not raw:
        return None
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as e:
        logger.error("invalid_provider_json", setting=setting, error=str(e))
        return None
    if not isinstance(data, list) or not all(isinstance(x, dict) for x in data):
        logger.error("invalid_provider_json", setting=setting, error="expected a JSON list of objects")
        return None
    return data


def get_bitcoin_rpc_nodes(network: str, raw: str = "") -> list[ProviderConfig]:
    """
    Node RPC providers.

    Entries use the node shape `{url, name, username, password}`; the list
    position becomes the priority.
    """
    entries = _parse_json_list(raw, "BITCOIN_RPC_NODES")
    if entries is None:
        entries = DEFAULT_BITCOIN_RPC_NODES.get(network, DEFAULT_BITCOIN_RPC_NODES["testnet"])

    nodes = []
    for index, entry in enumerate(entries):
        nodes.append(
            ProviderConfig(
                name=entry.get("name") or f"rpc-{index}",
                kind="rpc",
                url=entry.get("url", ""),
                username=entry.get("username", ""),
                password=entry.get("password", ""),
                wallet=entry.get("wallet"),
                priority=entry.get("priority", index),
                timeout=entry.get("timeout", 10_000) / 1000,
                retries=entry.get("retries", 2),
            )
        )
    return nodes


def get_bitcoin_api_configs(network: str, raw: str = "") -> list[ProviderConfig]:
    """
    Esplora explorer providers.

    Entries use `{url, name, priority, timeout (ms), retries}`; a missing
    priority defaults to the list position. The default
    explorers are rewritten to their `/testnet/api` variants off mainnet.
    """
    entries = _parse_json_list(raw, "BITCOIN_API_CONFIGS")
    if entries is None:
        entries = DEFAULT_BITCOIN_API_CONFIGS
        if network != "mainnet":
            entries = [{**e, "url": e["url"].replace("/api", "/testnet/api")} for e in entries]

    return [
        ProviderConfig(
            name=entry.get("name", ""),
            kind="explorer",
            url=entry.get("url", ""),
            priority=entry.get("priority", index),
            timeout=entry.get("timeout", 5000) / 1000,
            retries=entry.get("retries", 2),
        )
        for index, entry in enumerate(entries)
    ]


def build_provider_registry(settings: Settings) -> ProviderRegistry:
    """Build the validated provider registry from settings."""
    try:
        providers = get_bitcoin_rpc_nodes(settings.bitcoin_network, settings.bitcoin_rpc_nodes)
        providers += get_bitcoin_api_configs(settings.bitcoin_network, settings.bitcoin_api_configs)
    except (KeyError, TypeError, ValidationError) as e:
        raise ValueError(f"Invalid provider configuration: {e}") from e
    return ProviderRegistry(providers)


@dataclass
class OracleConfig:
    """Full oracle configuration."""

    settings: Settings
    registry: ProviderRegistry
    sapphire_rpc_urls: list[str]

    @classmethod
    def from_settings(cls, settings: Settings) -> "OracleConfig":
        return cls(
            settings=settings,
            registry=build_provider_registry(settings),
            sapphire_rpc_urls=get_sapphire_rpc_urls(settings.network, settings.sapphire_rpc_urls),
        )

    @classmethod
    def from_env(cls, env_path: Optional[Path] = None, **overrides: Any) -> "OracleConfig":
        """Load configuration from environment, applying non-empty overrides."""
        settings = Settings(_env_file=env_path) if env_path else Settings()
        updates = {k: v for k, v in overrides.items() if v not in (None, "")}
        if updates:
            settings = settings.model_copy(update=updates)
        return cls.from_settings(settings)
