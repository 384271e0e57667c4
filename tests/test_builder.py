"""
Tests for payout construction, signing and broadcast.
"""

import pytest
from coincurve import PublicKey

from trustless_oracle.bitcoin import (
    SIGHASH_ALL,
    hash160,
    legacy_sighash,
    p2pkh_script,
    parse_transaction,
    script_pushes,
)
from trustless_oracle.builder import BitcoinGateway, Broadcaster, SignedTransaction, TransactionBuilder
from trustless_oracle.errors import (
    ConsensusUnavailable,
    InsufficientFunds,
    NoUtxos,
    SigningFailure,
    TransactionBuildError,
)
from trustless_oracle.explorer import AddressUtxo
from trustless_oracle.facts import TrackedAddress
from trustless_oracle.address import TESTNET
from trustless_oracle.fees import FeePlanner
from trustless_oracle.signer import RemoteSigner

from conftest import FakeContract, FakeProvider, failing_provider, funding_transaction

DESTINATION = "tb1qw508d6qejxtdg4y5r3zarvary0c5xw7kxpjzsx"


def _builder(tracked, provider) -> TransactionBuilder:
    gateway = BitcoinGateway([provider])
    return TransactionBuilder(tracked, gateway, FeePlanner([provider], "testnet"))


class TestBuildAndSign:
    """End-to-end payout construction with a contract-held key."""

    @pytest.mark.asyncio
    async def test_two_outputs_with_change(self, tracked, funded_provider, bridge_key, oracle_account):
        contract = FakeContract(bridge_key)
        signed = await _builder(tracked, funded_provider).build_and_sign(
            DESTINATION, 50_000, RemoteSigner(contract, oracle_account)
        )

        tx = parse_transaction(bytes.fromhex(signed.raw_tx_hex))
        assert tx.txid() == signed.tx_hash
        assert len(tx.inputs) == 1
        assert len(tx.outputs) == 2
        assert tx.outputs[0].value == 50_000
        assert tx.outputs[0].script_pubkey.hex() == "0014751e76e8199196d454941c45d1b3a323f1433bd6"
        assert tx.outputs[1].value == 48_644
        assert tx.outputs[1].script_pubkey == tracked.script_pubkey
        assert signed.fee_sats == 1356

    @pytest.mark.asyncio
    async def test_script_sig_verifies(self, tracked, funded_provider, bridge_key, oracle_account):
        contract = FakeContract(bridge_key)
        signed = await _builder(tracked, funded_provider).build_and_sign(
            DESTINATION, 50_000, RemoteSigner(contract, oracle_account)
        )

        tx = parse_transaction(bytes.fromhex(signed.raw_tx_hex))
        sig_with_type, pubkey = script_pushes(tx.inputs[0].script_sig)
        assert sig_with_type[-1] == SIGHASH_ALL
        assert pubkey == bridge_key.public_key.format(compressed=True)

        sighash = legacy_sighash(tx, 0, p2pkh_script(hash160(pubkey)))
        assert PublicKey(pubkey).verify(sig_with_type[:-1], sighash, hasher=None)

    @pytest.mark.asyncio
    async def test_high_s_normalized(self, tracked, funded_provider, bridge_key, oracle_account):
        contract = FakeContract(bridge_key, high_s=True)
        signed = await _builder(tracked, funded_provider).build_and_sign(
            DESTINATION, 50_000, RemoteSigner(contract, oracle_account)
        )
        assert parse_transaction(bytes.fromhex(signed.raw_tx_hex)).inputs[0].script_sig

    @pytest.mark.asyncio
    async def test_every_input_signed_once(self, tracked, bridge_key, oracle_account):
        script = tracked.script_pubkey
        parents = [funding_transaction(script, 40_000, seed=i) for i in range(3)]
        provider = FakeProvider(
            fee_rate=1,
            utxos=[AddressUtxo(p.txid(), 0, 40_000, True, 100) for p in parents],
            raw_txs={p.txid(): p.to_hex() for p in parents},
        )
        contract = FakeContract(bridge_key)

        signed = await _builder(tracked, provider).build_and_sign(
            DESTINATION, 100_000, RemoteSigner(contract, oracle_account)
        )

        tx = parse_transaction(bytes.fromhex(signed.raw_tx_hex))
        assert len(tx.inputs) == 3
        assert contract.sign_calls == 3
        assert len(contract.logins) == 1
        assert all(inp.script_sig for inp in tx.inputs)

    @pytest.mark.asyncio
    async def test_insufficient_funds(self, tracked, funded_provider, bridge_key, oracle_account):
        contract = FakeContract(bridge_key)
        with pytest.raises(InsufficientFunds):
            await _builder(tracked, funded_provider).build_and_sign(
                DESTINATION, 99_000, RemoteSigner(contract, oracle_account)
            )
        assert contract.sign_calls == 0

    @pytest.mark.asyncio
    async def test_no_utxos(self, tracked, bridge_key, oracle_account):
        provider = FakeProvider(fee_rate=5, utxos=[])
        with pytest.raises(NoUtxos):
            await _builder(tracked, provider).build_and_sign(
                DESTINATION, 1_000, RemoteSigner(FakeContract(bridge_key), oracle_account)
            )

    @pytest.mark.asyncio
    async def test_invalid_destination(self, tracked, funded_provider, bridge_key, oracle_account):
        with pytest.raises(TransactionBuildError):
            await _builder(tracked, funded_provider).build_and_sign(
                "bc1qw508d6qejxtdg4y5r3zarvary0c5xw7kv8f3t4",
                1_000,
                RemoteSigner(FakeContract(bridge_key), oracle_account),
            )

    @pytest.mark.asyncio
    async def test_wrong_contract_key(self, tracked, funded_provider, user_key, oracle_account):
        """The contract's key must be the one behind the tracked address."""
        with pytest.raises(SigningFailure, match="does not match"):
            await _builder(tracked, funded_provider).build_and_sign(
                DESTINATION, 1_000, RemoteSigner(FakeContract(user_key), oracle_account)
            )

    @pytest.mark.asyncio
    async def test_bad_signature_aborts(self, tracked, funded_provider, bridge_key, user_key, oracle_account):
        class WrongSigner(FakeContract):
            async def public_key(self):
                return bridge_key.public_key.format(compressed=True)

        with pytest.raises(SigningFailure, match="input 0"):
            await _builder(tracked, funded_provider).build_and_sign(
                DESTINATION, 1_000, RemoteSigner(WrongSigner(user_key), oracle_account)
            )


class TestCollectUtxos:
    """UTXO listings are checked against their parent transactions."""

    @pytest.mark.asyncio
    async def test_value_mismatch(self, tracked):
        parent = funding_transaction(tracked.script_pubkey, 10_000)
        provider = FakeProvider(
            utxos=[AddressUtxo(parent.txid(), 0, 99_999, True)],
            raw_txs={parent.txid(): parent.to_hex()},
        )
        with pytest.raises(TransactionBuildError, match="value mismatch"):
            await _builder(tracked, provider).collect_utxos()

    @pytest.mark.asyncio
    async def test_parent_hash_mismatch(self, tracked):
        parent = funding_transaction(tracked.script_pubkey, 10_000)
        other = funding_transaction(tracked.script_pubkey, 10_000, seed=9)
        provider = FakeProvider(
            utxos=[AddressUtxo(parent.txid(), 0, 10_000, True)],
            raw_txs={parent.txid(): other.to_hex()},
        )
        with pytest.raises(TransactionBuildError, match="hash mismatch"):
            await _builder(tracked, provider).collect_utxos()

    @pytest.mark.asyncio
    async def test_output_not_ours(self, tracked):
        parent = funding_transaction(p2pkh_script(b"\x01" * 20), 10_000)
        provider = FakeProvider(
            utxos=[AddressUtxo(parent.txid(), 0, 10_000, True)],
            raw_txs={parent.txid(): parent.to_hex()},
        )
        with pytest.raises(TransactionBuildError, match="does not pay"):
            await _builder(tracked, provider).collect_utxos()

    def test_tracked_must_be_p2pkh(self, funded_provider):
        segwit = TrackedAddress("tb1qw508d6qejxtdg4y5r3zarvary0c5xw7kxpjzsx", TESTNET)
        with pytest.raises(TransactionBuildError):
            _builder(segwit, funded_provider)


class TestGateway:
    """Priority fallback for single-answer operations."""

    @pytest.mark.asyncio
    async def test_utxos_fall_back(self):
        utxos = [AddressUtxo("aa" * 32, 0, 1, True)]
        gateway = BitcoinGateway([failing_provider("a"), FakeProvider("b", utxos=None), FakeProvider("c", utxos=utxos)])
        assert await gateway.list_utxos("addr") == utxos

    @pytest.mark.asyncio
    async def test_broadcast_all_fail(self):
        gateway = BitcoinGateway([failing_provider("a"), failing_provider("b")])
        with pytest.raises(ConsensusUnavailable) as exc_info:
            await gateway.broadcast("00")
        assert set(exc_info.value.failures) == {"a", "b"}

    @pytest.mark.asyncio
    async def test_broadcaster_returns_local_txid(self, tracked):
        tx = funding_transaction(tracked.script_pubkey, 1_000)
        provider = FakeProvider()
        signed = SignedTransaction(raw_tx_hex=tx.to_hex(), tx_hash=tx.txid())
        assert await Broadcaster(BitcoinGateway([provider])).broadcast(signed) == tx.txid()
        assert provider.broadcasts == [tx.to_hex()]
