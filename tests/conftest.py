"""
Shared fakes for oracle tests.
"""

import asyncio
import base64
from dataclasses import replace
from typing import Optional

import pytest
from coincurve import PrivateKey
from eth_account import Account

from trustless_oracle.address import TESTNET, pubkey_to_p2pkh_address
from trustless_oracle.bitcoin import (
    Transaction,
    TxInput,
    TxOutput,
    hash160,
    p2pkh_script,
    parse_transaction,
)
from trustless_oracle.errors import ProviderError
from trustless_oracle.evm import BurnRecord, BurnStatus
from trustless_oracle.explorer import AddressUtxo
from trustless_oracle.facts import TrackedAddress, TransactionFacts
from trustless_oracle.signer import SECP256K1_N, decode_der_signature
from trustless_oracle.signmessage import bitcoin_message_hash

ORACLE_SECRET = "0x" + "11" * 32
BRIDGE_KEY_BYTES = bytes([0x22]) * 32
USER_KEY_BYTES = bytes([0x33]) * 32


def sign_bitcoin_message(key: PrivateKey, message: str, header_base: int = 31) -> str:
    """BIP-137 signature: header_base 27 (uncompressed), 31, 35 or 39."""
    recoverable = key.sign_recoverable(bitcoin_message_hash(message), hasher=None)
    header = header_base + recoverable[64]
    return base64.b64encode(bytes([header]) + recoverable[:64]).decode()


def make_facts(
    tx_hash: str = "aa" * 32,
    amount_sats: int = 50_000,
    senders: tuple[str, ...] = ("tb1qw508d6qejxtdg4y5r3zarvary0c5xw7kxpjzsx",),
    confirmations: int = 6,
    provider: str = "fake",
) -> TransactionFacts:
    return TransactionFacts(
        tx_hash=tx_hash,
        amount_sats=amount_sats,
        senders=frozenset(senders),
        receiver_is_tracked=amount_sats > 0,
        confirmations=confirmations,
        provider=provider,
    )


class FakeProvider:
    """In-memory stand-in for a Bitcoin provider."""

    def __init__(
        self,
        name: str = "fake",
        facts: Optional[TransactionFacts] = None,
        error: Optional[Exception] = None,
        delay: float = 0.0,
        fee_rate: Optional[int] = None,
        utxos: Optional[list[AddressUtxo]] = None,
        raw_txs: Optional[dict[str, str]] = None,
    ):
        self.name = name
        self.facts = facts
        self.error = error
        self.delay = delay
        self.fee_rate = fee_rate
        self.utxos = utxos
        self.raw_txs = raw_txs or {}
        self.broadcasts: list[str] = []
        self.fetches: list[str] = []

    async def fetch_facts(self, tx_hash: str) -> Optional[TransactionFacts]:
        self.fetches.append(tx_hash)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return self.facts

    async def estimate_fee_rate(self) -> Optional[int]:
        if self.error is not None:
            raise self.error
        return self.fee_rate

    async def list_utxos(self, address: str) -> Optional[list[AddressUtxo]]:
        if self.error is not None:
            raise self.error
        return self.utxos

    async def get_raw_transaction_hex(self, txid: str) -> Optional[str]:
        return self.raw_txs.get(txid)

    async def broadcast(self, raw_tx_hex: str) -> str:
        if self.error is not None:
            raise self.error
        self.broadcasts.append(raw_tx_hex)
        return parse_transaction(bytes.fromhex(raw_tx_hex)).txid()

    async def close(self) -> None:
        return None


def failing_provider(name: str) -> FakeProvider:
    return FakeProvider(name=name, error=ProviderError(name, "connection refused"))


class FakeContract:
    """
    Bridge contract double.

    Holds the Bitcoin key the way the real contract does and signs sighashes
    with it; records every state-changing call.
    """

    def __init__(self, bitcoin_key: PrivateKey, high_s: bool = False):
        self.bitcoin_key = bitcoin_key
        self.high_s = high_s
        self.address = "0x" + "ab" * 20
        self.records: dict[int, BurnRecord] = {}
        self.oracle_address = "0x" + "00" * 20
        self.minted: list[tuple[str, int, bytes]] = []
        self.burns_signed: list[tuple[int, bytes, bytes]] = []
        self.validated: list[int] = []
        self.logins: list[str] = []
        self.sign_calls = 0
        self.burn_data_error: Optional[Exception] = None

    def add_burn(
        self,
        burn_id: int,
        destination: str,
        amount_sats: int,
        status: BurnStatus = BurnStatus.REQUESTED,
        transaction_hash: bytes = b"\x00" * 32,
    ) -> BurnRecord:
        record = BurnRecord(
            burn_id=burn_id,
            user="0x" + "cd" * 20,
            amount_sats=amount_sats,
            destination_address=destination,
            status=status,
            transaction_hash=transaction_hash,
        )
        self.records[burn_id] = record
        return record

    async def domain(self) -> str:
        return "bridge.example"

    async def chain_id(self) -> int:
        return 0x5AFF

    async def oracle(self) -> str:
        return self.oracle_address

    def encode_call(self, name: str, *args: object) -> str:
        return f"0x{name}:{','.join(str(a) for a in args)}"

    async def login(self, message: str, signature: tuple[int, int, int]) -> bytes:
        self.logins.append(message)
        return b"session-token"

    async def public_key(self) -> bytes:
        return self.bitcoin_key.public_key.format(compressed=True)

    async def sign(self, sighash: bytes, token: bytes) -> tuple[int, int, int, int]:
        assert token == b"session-token"
        self.sign_calls += 1
        r, s = decode_der_signature(self.bitcoin_key.sign(sighash, hasher=None))
        if self.high_s:
            s = SECP256K1_N - s
        return self.sign_calls, r, s, 0

    async def burn_data(self, burn_id: int) -> BurnRecord:
        if self.burn_data_error is not None:
            raise self.burn_data_error
        return self.records[burn_id]

    async def mint(self, claimant: str, amount_sats: int, tx_hash: bytes) -> str:
        self.minted.append((claimant, amount_sats, tx_hash))
        return "0x" + "01" * 32

    async def burn_signed(self, burn_id: int, raw_tx: bytes, tx_hash: bytes) -> str:
        self.burns_signed.append((burn_id, raw_tx, tx_hash))
        self.records[burn_id] = replace(
            self.records[burn_id], status=BurnStatus.SIGNED, transaction_hash=tx_hash
        )
        return "0x" + "02" * 32

    async def validate_burn(self, burn_id: int) -> str:
        self.validated.append(burn_id)
        self.records[burn_id] = replace(self.records[burn_id], status=BurnStatus.VALIDATED)
        return "0x" + "03" * 32


def funding_transaction(script_pubkey: bytes, value: int, seed: int = 0) -> Transaction:
    """A parent transaction paying `value` to `script_pubkey` at output 0."""
    return Transaction(
        version=2,
        inputs=[TxInput(prev_txid=f"{seed:064x}", vout=0, script_sig=b"\x51")],
        outputs=[TxOutput(value=value, script_pubkey=script_pubkey)],
    )


@pytest.fixture
def bridge_key() -> PrivateKey:
    return PrivateKey(BRIDGE_KEY_BYTES)


@pytest.fixture
def user_key() -> PrivateKey:
    return PrivateKey(USER_KEY_BYTES)


@pytest.fixture
def oracle_account():
    return Account.from_key(ORACLE_SECRET)


@pytest.fixture
def tracked(bridge_key: PrivateKey) -> TrackedAddress:
    pubkey = bridge_key.public_key.format(compressed=True)
    return TrackedAddress(pubkey_to_p2pkh_address(pubkey, TESTNET), TESTNET)


@pytest.fixture
def funded_provider(tracked: TrackedAddress, bridge_key: PrivateKey) -> FakeProvider:
    """A provider listing one 100,000 sat UTXO of the tracked address, fee rate 5."""
    pubkey = bridge_key.public_key.format(compressed=True)
    parent = funding_transaction(p2pkh_script(hash160(pubkey)), 100_000)
    txid = parent.txid()
    return FakeProvider(
        name="funded",
        fee_rate=5,
        utxos=[AddressUtxo(txid=txid, vout=0, value_sats=100_000, confirmed=True, block_height=100)],
        raw_txs={txid: parent.to_hex()},
    )
