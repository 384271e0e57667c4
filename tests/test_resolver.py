"""
Tests for sender address resolution.
"""

import pytest

from trustless_oracle.address import (
    MAINNET,
    pubkey_to_p2pkh_address,
    pubkey_to_p2sh_p2wpkh_address,
    pubkey_to_p2wpkh_address,
    script_to_p2wsh_address,
)
from trustless_oracle.bitcoin import hash160, push_data, witness_script
from trustless_oracle.resolver import AddressResolver, TxInputView

G_PUBKEY = bytes.fromhex("0279be667ef9dcbbac55a06295ce870b07029bfcdb2dce28d959f2815b16f81798")
DER_SIG = bytes.fromhex("30440220" + "11" * 32 + "0220" + "22" * 32 + "01")


class _Lookup:
    def __init__(self, result=None, error=None):
        self.result = result
        self.error = error
        self.calls = []

    async def __call__(self, txid, vout):
        self.calls.append((txid, vout))
        if self.error is not None:
            raise self.error
        return self.result


@pytest.fixture
def resolver() -> AddressResolver:
    return AddressResolver(MAINNET)


def _view(**kwargs) -> TxInputView:
    return TxInputView(prev_txid="ee" * 32, vout=1, **kwargs)


class TestResolveSender:
    """Resolution order across input shapes."""

    @pytest.mark.asyncio
    async def test_annotated_address_first(self, resolver):
        lookup = _Lookup("unused")
        view = _view(annotated_address="bc1qexample", script_sig=push_data(DER_SIG) + push_data(G_PUBKEY))
        assert await resolver.resolve_sender(view, lookup) == "bc1qexample"
        assert lookup.calls == []

    @pytest.mark.asyncio
    async def test_coinbase_has_no_sender(self, resolver):
        lookup = _Lookup("unused")
        assert await resolver.resolve_sender(_view(is_coinbase=True), lookup) is None
        assert lookup.calls == []

    @pytest.mark.asyncio
    async def test_p2wpkh_witness(self, resolver):
        view = _view(witness=(DER_SIG, G_PUBKEY))
        assert await resolver.resolve_sender(view) == "bc1qw508d6qejxtdg4y5r3zarvary0c5xw7kv8f3t4"

    @pytest.mark.asyncio
    async def test_p2sh_p2wpkh(self, resolver):
        redeem = witness_script(0, hash160(G_PUBKEY))
        view = _view(script_sig=push_data(redeem), witness=(DER_SIG, G_PUBKEY))
        assert await resolver.resolve_sender(view) == pubkey_to_p2sh_p2wpkh_address(G_PUBKEY)

    @pytest.mark.asyncio
    async def test_p2wsh_uses_witness_script(self, resolver):
        script = bytes([0x52]) + push_data(G_PUBKEY) + push_data(G_PUBKEY) + bytes([0x52, 0xAE])
        view = _view(witness=(b"", DER_SIG, DER_SIG, script))
        assert await resolver.resolve_sender(view) == script_to_p2wsh_address(script)

    @pytest.mark.asyncio
    async def test_taproot_key_path_uses_lookup(self, resolver):
        lookup = _Lookup("bc1ptaprootaddress")
        view = _view(witness=(b"\x01" * 64,))
        assert await resolver.resolve_sender(view, lookup) == "bc1ptaprootaddress"
        assert lookup.calls == [("ee" * 32, 1)]

    @pytest.mark.asyncio
    async def test_taproot_script_path_uses_lookup(self, resolver):
        lookup = _Lookup("bc1ptaprootaddress")
        control_block = bytes([0xC0]) + b"\x02" * 32
        view = _view(witness=(b"\x01" * 64, b"\x51", control_block))
        assert await resolver.resolve_sender(view, lookup) == "bc1ptaprootaddress"

    @pytest.mark.asyncio
    async def test_p2pkh_script_sig(self, resolver):
        view = _view(script_sig=push_data(DER_SIG) + push_data(G_PUBKEY))
        assert await resolver.resolve_sender(view) == pubkey_to_p2pkh_address(G_PUBKEY)

    @pytest.mark.asyncio
    async def test_empty_script_sig_uses_lookup(self, resolver):
        lookup = _Lookup("1BgGZ9tcN4rm9KBzDn7KprQz87SZ26SAMH")
        assert await resolver.resolve_sender(_view(), lookup) == "1BgGZ9tcN4rm9KBzDn7KprQz87SZ26SAMH"

    @pytest.mark.asyncio
    async def test_non_pubkey_push_uses_lookup(self, resolver):
        """A bare P2PK or multisig scriptSig carries no public key."""
        lookup = _Lookup("1SomeOtherAddress")
        view = _view(script_sig=bytes([0x00]) + push_data(DER_SIG))
        assert await resolver.resolve_sender(view, lookup) == "1SomeOtherAddress"

    @pytest.mark.asyncio
    async def test_lookup_failure_is_unresolved(self, resolver):
        lookup = _Lookup(error=RuntimeError("timeout"))
        assert await resolver.resolve_sender(_view(), lookup) is None

    @pytest.mark.asyncio
    async def test_no_lookup_available(self, resolver):
        assert await resolver.resolve_sender(_view()) is None

    @pytest.mark.asyncio
    async def test_uncompressed_witness_key_not_p2wpkh(self, resolver):
        """P2WPKH requires a compressed key; otherwise the last item is a witness script."""
        uncompressed = b"\x04" + b"\x01" * 64
        view = _view(witness=(DER_SIG, uncompressed))
        assert await resolver.resolve_sender(view) == script_to_p2wsh_address(uncompressed)

    def test_p2wpkh_address_matches_builder(self):
        assert pubkey_to_p2wpkh_address(G_PUBKEY) == "bc1qw508d6qejxtdg4y5r3zarvary0c5xw7kv8f3t4"
