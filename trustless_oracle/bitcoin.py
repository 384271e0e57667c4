"""
Bitcoin data structures and utilities for payout construction.

Covers hashing, varints, satoshi conversion, script pushes, and a small
transaction model able to parse segwit-serialized transactions and to
serialize/sign legacy (non-witness) spends.
"""

import hashlib
from dataclasses import dataclass, field, replace
from decimal import Decimal
from typing import Union

# Constants for BTC to satoshis conversion
SATS_PER_BTC = Decimal("100000000")

SIGHASH_ALL = 0x01

OP_0 = 0x00
OP_PUSHDATA1 = 0x4C
OP_PUSHDATA2 = 0x4D
OP_PUSHDATA4 = 0x4E
OP_DUP = 0x76
OP_EQUAL = 0x87
OP_EQUALVERIFY = 0x88
OP_HASH160 = 0xA9
OP_CHECKSIG = 0xAC


def sha256(data: bytes) -> bytes:
    return hashlib.sha256(data).digest()


def sha256d(data: bytes) -> bytes:
    """Double SHA256 hash (Bitcoin standard)."""
    return hashlib.sha256(hashlib.sha256(data).digest()).digest()


def hash160(data: bytes) -> bytes:
    """RIPEMD160(SHA256(data))"""
    h = hashlib.new("ripemd160")
    h.update(hashlib.sha256(data).digest())
    return h.digest()


def reverse_bytes(data: bytes) -> bytes:
    """Reverse byte order (for Bitcoin little-endian display)."""
    return data[::-1]


def txid_display_to_internal(txid_hex: str) -> bytes:
    """Convert a display-format txid (as shown by explorers) to internal byte order."""
    txid_hex = txid_hex.replace("0x", "")
    return reverse_bytes(bytes.fromhex(txid_hex))


def txid_internal_to_display(internal: bytes) -> str:
    return reverse_bytes(internal).hex()


def btc_to_sats(value: Union[int, float, str, Decimal]) -> int:
    """
    Convert BTC value to satoshis with exact precision.

    Uses Decimal arithmetic to avoid float precision issues.
    Bitcoin Core RPC may return value as float (e.g., 0.1) but
    float(0.1) * 1e8 = 9999999.999999998, not 10000000.

    Examples:
        >>> btc_to_sats(0.1)
        10000000
        >>> btc_to_sats("0.12345678")
        12345678
    """
    if isinstance(value, Decimal):
        dec_value = value
    elif isinstance(value, str):
        dec_value = Decimal(value)
    else:
        # int or float: convert via string to avoid float representation issues
        dec_value = Decimal(str(value))

    sats = dec_value * SATS_PER_BTC

    if sats != sats.to_integral_value():
        raise ValueError(f"BTC value {value} results in fractional satoshis: {sats}")

    return int(sats)


def encode_varint(value: int) -> bytes:
    if value < 0:
        raise ValueError("varint must be non-negative")
    if value < 0xFD:
        return bytes([value])
    if value <= 0xFFFF:
        return b"\xfd" + value.to_bytes(2, "little")
    if value <= 0xFFFFFFFF:
        return b"\xfe" + value.to_bytes(4, "little")
    return b"\xff" + value.to_bytes(8, "little")


def parse_varint(data: bytes, offset: int = 0) -> tuple[int, int]:
    """
    Parse Bitcoin VarInt.
    Returns (value, new_offset).
    """
    first = data[offset]
    if first < 0xFD:
        return first, offset + 1
    elif first == 0xFD:
        return int.from_bytes(data[offset + 1 : offset + 3], "little"), offset + 3
    elif first == 0xFE:
        return int.from_bytes(data[offset + 1 : offset + 5], "little"), offset + 5
    else:
        return int.from_bytes(data[offset + 1 : offset + 9], "little"), offset + 9


# ---------------------------------------------------------------------------
# Scripts
# ---------------------------------------------------------------------------


def push_data(data: bytes) -> bytes:
    """Minimal push of `data` onto the script stack."""
    length = len(data)
    if length < OP_PUSHDATA1:
        return bytes([length]) + data
    if length <= 0xFF:
        return bytes([OP_PUSHDATA1, length]) + data
    if length <= 0xFFFF:
        return bytes([OP_PUSHDATA2]) + length.to_bytes(2, "little") + data
    return bytes([OP_PUSHDATA4]) + length.to_bytes(4, "little") + data


def script_pushes(script: bytes) -> list[bytes]:
    """
    Return the data pushed by `script`, in order.

    Non-push opcodes are skipped. Raises ValueError on a truncated push.
    """
    pushes: list[bytes] = []
    offset = 0
    while offset < len(script):
        opcode = script[offset]
        offset += 1

        if opcode == OP_0:
            pushes.append(b"")
            continue
        if opcode < OP_PUSHDATA1:
            length = opcode
        elif opcode == OP_PUSHDATA1:
            length = script[offset]
            offset += 1
        elif opcode == OP_PUSHDATA2:
            length = int.from_bytes(script[offset : offset + 2], "little")
            offset += 2
        elif opcode == OP_PUSHDATA4:
            length = int.from_bytes(script[offset : offset + 4], "little")
            offset += 4
        else:
            continue

        if offset + length > len(script):
            raise ValueError("script push exceeds script length")
        pushes.append(script[offset : offset + length])
        offset += length

    return pushes


def p2pkh_script(pubkey_hash: bytes) -> bytes:
    """OP_DUP OP_HASH160 <20 bytes> OP_EQUALVERIFY OP_CHECKSIG"""
    return bytes([OP_DUP, OP_HASH160, 0x14]) + pubkey_hash + bytes([OP_EQUALVERIFY, OP_CHECKSIG])


def p2sh_script(script_hash: bytes) -> bytes:
    """OP_HASH160 <20 bytes> OP_EQUAL"""
    return bytes([OP_HASH160, 0x14]) + script_hash + bytes([OP_EQUAL])


def witness_script(version: int, program: bytes) -> bytes:
    """OP_n <program>"""
    op = OP_0 if version == 0 else 0x50 + version
    return bytes([op, len(program)]) + program


def is_p2pkh_script(script: bytes) -> bool:
    return (
        len(script) == 25
        and script[0] == OP_DUP
        and script[1] == OP_HASH160
        and script[2] == 0x14
        and script[23] == OP_EQUALVERIFY
        and script[24] == OP_CHECKSIG
    )


def is_valid_pubkey(data: bytes) -> bool:
    """Structural check for a SEC-encoded secp256k1 public key."""
    if len(data) == 33 and data[0] in (0x02, 0x03):
        return True
    return len(data) == 65 and data[0] == 0x04


# ---------------------------------------------------------------------------
# Transactions
# ---------------------------------------------------------------------------


@dataclass
class TxInput:
    """Transaction input. `prev_txid` is in display format."""

    prev_txid: str
    vout: int
    script_sig: bytes = b""
    sequence: int = 0xFFFFFFFF
    witness: list[bytes] = field(default_factory=list)

    def serialize(self) -> bytes:
        return (
            txid_display_to_internal(self.prev_txid)
            + self.vout.to_bytes(4, "little")
            + encode_varint(len(self.script_sig))
            + self.script_sig
            + self.sequence.to_bytes(4, "little")
        )


@dataclass
class TxOutput:
    """Bitcoin transaction output."""

    value: int  # satoshis
    script_pubkey: bytes

    def serialize(self) -> bytes:
        return (
            self.value.to_bytes(8, "little")
            + encode_varint(len(self.script_pubkey))
            + self.script_pubkey
        )


@dataclass
class Transaction:
    """Bitcoin transaction."""

    version: int = 2
    inputs: list[TxInput] = field(default_factory=list)
    outputs: list[TxOutput] = field(default_factory=list)
    locktime: int = 0

    @property
    def has_witness(self) -> bool:
        return any(inp.witness for inp in self.inputs)

    def serialize(self, include_witness: bool = True) -> bytes:
        witness = include_witness and self.has_witness
        raw = self.version.to_bytes(4, "little")
        if witness:
            raw += b"\x00\x01"
        raw += encode_varint(len(self.inputs))
        raw += b"".join(inp.serialize() for inp in self.inputs)
        raw += encode_varint(len(self.outputs))
        raw += b"".join(out.serialize() for out in self.outputs)
        if witness:
            for inp in self.inputs:
                raw += encode_varint(len(inp.witness))
                for item in inp.witness:
                    raw += encode_varint(len(item)) + item
        raw += self.locktime.to_bytes(4, "little")
        return raw

    def to_hex(self) -> str:
        return self.serialize().hex()

    def txid(self) -> str:
        """Transaction id in display format (witness data excluded)."""
        return txid_internal_to_display(sha256d(self.serialize(include_witness=False)))


def parse_transaction(raw_tx: bytes) -> Transaction:
    """
    Parse a serialized transaction (legacy or segwit).

    Raises ValueError on malformed input.
    """
    try:
        offset = 0
        version = int.from_bytes(raw_tx[0:4], "little")
        offset = 4

        # Check for witness marker
        has_witness = raw_tx[offset] == 0x00 and raw_tx[offset + 1] == 0x01
        if has_witness:
            offset += 2

        input_count, offset = parse_varint(raw_tx, offset)
        inputs: list[TxInput] = []
        for _ in range(input_count):
            prev_txid = txid_internal_to_display(raw_tx[offset : offset + 32])
            offset += 32
            vout = int.from_bytes(raw_tx[offset : offset + 4], "little")
            offset += 4
            script_len, offset = parse_varint(raw_tx, offset)
            script_sig = raw_tx[offset : offset + script_len]
            offset += script_len
            sequence = int.from_bytes(raw_tx[offset : offset + 4], "little")
            offset += 4
            inputs.append(TxInput(prev_txid, vout, script_sig, sequence))

        output_count, offset = parse_varint(raw_tx, offset)
        outputs: list[TxOutput] = []
        for _ in range(output_count):
            value = int.from_bytes(raw_tx[offset : offset + 8], "little")
            offset += 8
            script_len, offset = parse_varint(raw_tx, offset)
            script_pubkey = raw_tx[offset : offset + script_len]
            offset += script_len
            outputs.append(TxOutput(value=value, script_pubkey=script_pubkey))

        if has_witness:
            for inp in inputs:
                item_count, offset = parse_varint(raw_tx, offset)
                for _ in range(item_count):
                    item_len, offset = parse_varint(raw_tx, offset)
                    inp.witness.append(raw_tx[offset : offset + item_len])
                    offset += item_len

        locktime = int.from_bytes(raw_tx[offset : offset + 4], "little")
        offset += 4
    except IndexError as e:
        raise ValueError(f"Truncated transaction: {e}") from e

    if offset > len(raw_tx):
        raise ValueError("Truncated transaction")
    if offset != len(raw_tx):
        raise ValueError(f"Trailing data after transaction ({len(raw_tx) - offset} bytes)")

    return Transaction(version=version, inputs=inputs, outputs=outputs, locktime=locktime)


def legacy_sighash(
    tx: Transaction,
    input_index: int,
    script_code: bytes,
    sighash_type: int = SIGHASH_ALL,
) -> bytes:
    """
    Legacy (pre-segwit) signature hash for SIGHASH_ALL.

    Every scriptSig is blanked, the signed input carries `script_code`
    (the spent output's scriptPubKey), and the sighash type is appended
    as a 4-byte little-endian integer before double hashing.
    """
    if input_index < 0 or input_index >= len(tx.inputs):
        raise ValueError(f"input_index {input_index} out of range [0, {len(tx.inputs)})")
    if sighash_type != SIGHASH_ALL:
        raise ValueError("Only SIGHASH_ALL is supported")

    inputs = [
        replace(inp, script_sig=script_code if i == input_index else b"", witness=[])
        for i, inp in enumerate(tx.inputs)
    ]
    unsigned = Transaction(
        version=tx.version, inputs=inputs, outputs=list(tx.outputs), locktime=tx.locktime
    )
    preimage = unsigned.serialize(include_witness=False) + sighash_type.to_bytes(4, "little")
    return sha256d(preimage)

