"""
Sender address extraction from transaction inputs.

Providers disagree on how much they tell us about an input: explorers
annotate the spent output's address, node RPC gives only the scriptSig and
witness. The resolver tries, in order:

1. the address annotated by the provider;
2. the witness stack (P2WPKH / P2SH-P2WPKH / P2WSH);
3. the spent output, fetched from the same provider, when there is no scriptSig;
4. the final scriptSig push as a public key (P2PKH), else the spent output.
"""

from dataclasses import dataclass, field
from typing import Awaitable, Callable, Optional

import structlog

from .address import (
    NetworkParams,
    pubkey_to_p2pkh_address,
    pubkey_to_p2wpkh_address,
    script_to_p2sh_address,
    script_to_p2wsh_address,
)
from .bitcoin import is_valid_pubkey, script_pushes

logger = structlog.get_logger()

# (prev_txid, vout) -> address of that output, or None
PrevoutLookup = Callable[[str, int], Awaitable[Optional[str]]]

TAPROOT_LEAF_MASK = 0xFE
TAPROOT_LEAF_TAPSCRIPT = 0xC0
ANNEX_TAG = 0x50


@dataclass(frozen=True)
class TxInputView:
    """Provider-neutral view of a transaction input."""

    prev_txid: str
    vout: int
    script_sig: bytes = b""
    witness: tuple[bytes, ...] = field(default_factory=tuple)
    annotated_address: Optional[str] = None
    is_coinbase: bool = False


def _is_schnorr_signature(item: bytes) -> bool:
    return len(item) in (64, 65)


def _is_taproot_control_block(item: bytes) -> bool:
    return (
        len(item) >= 33
        and (len(item) - 33) % 32 == 0
        and (item[0] & TAPROOT_LEAF_MASK) == TAPROOT_LEAF_TAPSCRIPT
    )


def _is_witness_program(script: bytes) -> bool:
    return len(script) in (22, 34) and script[0] == 0x00 and script[1] == len(script) - 2


class AddressResolver:
    """Resolves the address that funded a transaction input."""

    def __init__(self, network: NetworkParams):
        self.network = network

    async def resolve_sender(
        self,
        tx_input: TxInputView,
        lookup_prevout: Optional[PrevoutLookup] = None,
    ) -> Optional[str]:
        if tx_input.annotated_address:
            return tx_input.annotated_address

        if tx_input.is_coinbase:
            return None

        if tx_input.witness:
            address = self._from_witness(tx_input)
            if address is not None:
                return address
            return await self._lookup(tx_input, lookup_prevout)

        if not tx_input.script_sig:
            return await self._lookup(tx_input, lookup_prevout)

        address = self._from_script_sig(tx_input.script_sig)
        if address is not None:
            return address
        return await self._lookup(tx_input, lookup_prevout)

    def _from_witness(self, tx_input: TxInputView) -> Optional[str]:
        witness = list(tx_input.witness)

        # Drop a taproot annex
        if len(witness) >= 2 and witness[-1][:1] == bytes([ANNEX_TAG]):
            witness = witness[:-1]

        # P2SH-wrapped segwit: scriptSig pushes the witness program as redeem script
        if tx_input.script_sig:
            try:
                pushes = script_pushes(tx_input.script_sig)
            except ValueError:
                pushes = []
            if len(pushes) == 1 and _is_witness_program(pushes[0]):
                return script_to_p2sh_address(pushes[0], self.network)

        if len(witness) == 1:
            # Taproot key path spend: the output key is not recoverable
            if _is_schnorr_signature(witness[0]):
                return None
            return script_to_p2wsh_address(witness[0], self.network)

        if len(witness) == 2 and is_valid_pubkey(witness[1]) and len(witness[1]) == 33:
            return pubkey_to_p2wpkh_address(witness[1], self.network)

        # Taproot script path: [..., script, control block]
        if _is_taproot_control_block(witness[-1]):
            return None

        return script_to_p2wsh_address(witness[-1], self.network)

    def _from_script_sig(self, script_sig: bytes) -> Optional[str]:
        try:
            pushes = script_pushes(script_sig)
        except ValueError:
            return None
        if not pushes:
            return None

        pubkey = pushes[-1]
        if not is_valid_pubkey(pubkey):
            return None
        return pubkey_to_p2pkh_address(pubkey, self.network)

    async def _lookup(
        self, tx_input: TxInputView, lookup_prevout: Optional[PrevoutLookup]
    ) -> Optional[str]:
        if lookup_prevout is None:
            return None
        try:
            return await lookup_prevout(tx_input.prev_txid, tx_input.vout)
        except Exception as e:
            logger.warning(
                "prevout_lookup_failed",
                prev_txid=tx_input.prev_txid,
                vout=tx_input.vout,
                error=str(e),
            )
            return None
