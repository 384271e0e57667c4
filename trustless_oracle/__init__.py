"""
Trustless Bridge Oracle

Watches a Bitcoin <-> EVM bridge contract on Oasis Sapphire. Mints wrapped
BTC for deposits proven with a Bitcoin signed message, and pays out burns
with Bitcoin transactions signed by the contract-held key.

Bitcoin data comes from several providers (Core RPC nodes and Esplora
explorers) queried in parallel and reconciled by majority.

Usage:
    # Run the oracle
    trustless-oracle run --contract-address 0x... --bitcoin-network testnet

    # Run one poll cycle (for testing)
    trustless-oracle run --once --contract-address 0x... --secret 0x...

    # Look up a deposit
    trustless-oracle check-tx <txid> --address tb1q...
"""

__version__ = "0.1.0"

from .config import OracleConfig, Settings
from .consensus import ConsensusFetcher
from .builder import TransactionBuilder
from .evm import BridgeContract
from .db import BurnJournal
from .oracle import TrustlessBridgeOracle, create_oracle
from .signmessage import verify_message

__all__ = [
    "__version__",
    "OracleConfig",
    "Settings",
    "ConsensusFetcher",
    "TransactionBuilder",
    "BridgeContract",
    "BurnJournal",
    "TrustlessBridgeOracle",
    "create_oracle",
    "verify_message",
]
