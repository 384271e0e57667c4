"""
Payout transaction construction, remote signing and broadcast.

Payouts spend every UTXO of the tracked P2PKH address into exactly two
outputs: the destination and the change back to the tracked address.
"""

from dataclasses import dataclass
from typing import Sequence

import structlog
from coincurve import PublicKey

from .address import address_to_output_script, decode_address
from .bitcoin import (
    SIGHASH_ALL,
    Transaction,
    TxInput,
    TxOutput,
    hash160,
    legacy_sighash,
    parse_transaction,
    push_data,
)
from .errors import (
    ConsensusUnavailable,
    NoUtxos,
    ProviderError,
    SigningFailure,
    TransactionBuildError,
)
from .explorer import AddressUtxo
from .facts import TrackedAddress
from .fees import FeePlanner
from .providers import BitcoinProvider
from .signer import RemoteSigner

logger = structlog.get_logger()


@dataclass(frozen=True)
class Utxo:
    """A spendable output of the tracked address with its verified parent transaction."""

    txid: str
    vout: int
    value_sats: int
    prev_raw_tx_hex: str


@dataclass(frozen=True)
class SignedTransaction:
    """A fully signed payout."""

    raw_tx_hex: str
    tx_hash: str
    fee_sats: int = 0


class BitcoinGateway:
    """Priority-ordered fallback over providers for single-answer operations."""

    def __init__(self, providers: Sequence[BitcoinProvider]):
        if not providers:
            raise ValueError("At least one provider is required")
        self.providers = list(providers)

    async def list_utxos(self, address: str) -> list[AddressUtxo]:
        failures: dict[str, str] = {}
        for provider in self.providers:
            try:
                utxos = await provider.list_utxos(address)
            except ProviderError as e:
                failures[provider.name] = str(e)
                logger.warning("utxo_listing_failed", provider=provider.name, error=str(e))
                continue
            if utxos is not None:
                return utxos
        raise ConsensusUnavailable(f"No provider could list UTXOs for {address}", failures)

    async def get_raw_transaction_hex(self, txid: str) -> str:
        failures: dict[str, str] = {}
        for provider in self.providers:
            try:
                raw = await provider.get_raw_transaction_hex(txid)
            except ProviderError as e:
                failures[provider.name] = str(e)
                continue
            if raw:
                return raw
            failures[provider.name] = "transaction not found"
        raise ConsensusUnavailable(f"No provider returned raw transaction {txid}", failures)

    async def broadcast(self, raw_tx_hex: str) -> str:
        failures: dict[str, str] = {}
        for provider in self.providers:
            try:
                txid = await provider.broadcast(raw_tx_hex)
            except ProviderError as e:
                failures[provider.name] = str(e)
                logger.warning("broadcast_failed", provider=provider.name, error=str(e))
                continue
            logger.info("transaction_broadcast", provider=provider.name, txid=txid)
            return txid
        raise ConsensusUnavailable("Broadcast failed on every provider", failures)


class Broadcaster:
    """Sends signed payouts to the Bitcoin network."""

    def __init__(self, gateway: BitcoinGateway):
        self.gateway = gateway

    async def broadcast(self, signed: SignedTransaction) -> str:
        txid = await self.gateway.broadcast(signed.raw_tx_hex)
        if txid and txid != signed.tx_hash:
            logger.warning("broadcast_txid_mismatch", expected=signed.tx_hash, reported=txid)
        return signed.tx_hash


class TransactionBuilder:
    """Builds and remotely signs payouts from the tracked address."""

    def __init__(self, tracked: TrackedAddress, gateway: BitcoinGateway, planner: FeePlanner):
        self.tracked = tracked
        self.gateway = gateway
        self.planner = planner

        decoded = decode_address(tracked.address, tracked.network)
        if decoded is None or decoded.address_type != "p2pkh":
            raise TransactionBuildError(
                f"Tracked address {tracked.address} must be a P2PKH address"
            )
        self._pubkey_hash = decoded.program
        self._script_pubkey = decoded.output_script

    async def collect_utxos(self) -> list[Utxo]:
        """UTXOs of the tracked address, each checked against its parent transaction."""
        listed = await self.gateway.list_utxos(self.tracked.address)

        utxos = []
        for entry in listed:
            raw_hex = await self.gateway.get_raw_transaction_hex(entry.txid)
            self._verify_parent(entry, raw_hex)
            utxos.append(Utxo(entry.txid, entry.vout, entry.value_sats, raw_hex))
        return utxos

    def _verify_parent(self, entry: AddressUtxo, raw_hex: str) -> None:
        try:
            parent = parse_transaction(bytes.fromhex(raw_hex))
        except ValueError as e:
            raise TransactionBuildError(f"Malformed parent transaction {entry.txid}: {e}") from e

        if parent.txid() != entry.txid:
            raise TransactionBuildError(
                f"Parent transaction hash mismatch: expected {entry.txid}, got {parent.txid()}"
            )
        if entry.vout >= len(parent.outputs):
            raise TransactionBuildError(f"Output {entry.txid}:{entry.vout} does not exist")

        output = parent.outputs[entry.vout]
        if output.value != entry.value_sats:
            raise TransactionBuildError(
                f"UTXO value mismatch for {entry.txid}:{entry.vout}: "
                f"listed {entry.value_sats}, parent has {output.value}"
            )
        if output.script_pubkey != self._script_pubkey:
            raise TransactionBuildError(
                f"Output {entry.txid}:{entry.vout} does not pay the tracked address"
            )

    async def build_and_sign(
        self,
        destination: str,
        amount_sats: int,
        signer: RemoteSigner,
    ) -> SignedTransaction:
        """
        Build a payout of `amount_sats` to `destination` and sign every input.

        Raises NoUtxos, InsufficientFunds, TransactionBuildError or
        SigningFailure. A partially signed transaction is never returned.
        """
        try:
            destination_script = address_to_output_script(destination, self.tracked.network)
        except ValueError as e:
            raise TransactionBuildError(str(e)) from e

        utxos = await self.collect_utxos()
        if not utxos:
            raise NoUtxos(f"No UTXOs available for {self.tracked.address}")

        total = sum(u.value_sats for u in utxos)
        plan = await self.planner.plan(total, amount_sats, len(utxos))

        tx = Transaction(
            version=2,
            inputs=[TxInput(prev_txid=u.txid, vout=u.vout) for u in utxos],
            outputs=[
                TxOutput(value=plan.send, script_pubkey=destination_script),
                TxOutput(value=plan.change, script_pubkey=self._script_pubkey),
            ],
        )

        session = await signer.login()
        pubkey = session.public_key
        if hash160(pubkey) != self._pubkey_hash:
            raise SigningFailure("Contract public key does not match the tracked address")
        try:
            verifier = PublicKey(pubkey)
        except ValueError as e:
            raise SigningFailure(f"Invalid contract public key: {e}") from e

        script_sigs: list[bytes] = []
        for index in range(len(tx.inputs)):
            sighash = legacy_sighash(tx, index, self._script_pubkey, SIGHASH_ALL)
            try:
                result = await session.sign(sighash)
                der = result.to_der()
            except SigningFailure as e:
                raise SigningFailure(str(e), input_index=index) from e
            except Exception as e:
                raise SigningFailure(f"remote sign failed: {e}", input_index=index) from e

            if not verifier.verify(der, sighash, hasher=None):
                raise SigningFailure("signature does not verify against the contract key", input_index=index)

            script_sigs.append(push_data(der + bytes([SIGHASH_ALL])) + push_data(pubkey))

        for tx_input, script_sig in zip(tx.inputs, script_sigs):
            tx_input.script_sig = script_sig

        signed = SignedTransaction(raw_tx_hex=tx.to_hex(), tx_hash=tx.txid(), fee_sats=plan.fee)
        logger.info(
            "payout_signed",
            tx_hash=signed.tx_hash,
            destination=destination,
            amount_sats=plan.send,
            fee=plan.fee,
            inputs=len(utxos),
        )
        return signed

