"""
Bitcoin message signature verification (BIP-137).

We verify a base64 signature produced by common wallets for the message:
  "Bitcoin Signed Message:\n" + varint(len(message)) + message

Signature format (base64):
  header(1) + r(32) + s(32)  (compact recoverable signature)

Header ranges per BIP-137:
  - 27-30: P2PKH uncompressed
  - 31-34: P2PKH compressed
  - 35-38: Segwit P2SH (P2SH-P2WPKH)
  - 39-42: Segwit Bech32 (P2WPKH v0)

Electrum signs segwit addresses with the compressed P2PKH header, so a
31-34 header is also accepted for the P2WPKH and P2SH-P2WPKH addresses of
the recovered key.
"""

import base64
import binascii

from coincurve import PublicKey

from .address import MAINNET, NetworkParams, decode_address
from .bitcoin import encode_varint, hash160, sha256d, witness_script

MESSAGE_MAGIC = b"\x18Bitcoin Signed Message:\n"


def bitcoin_message_hash(message: str) -> bytes:
    msg = message.encode("utf-8")
    return sha256d(MESSAGE_MAGIC + encode_varint(len(msg)) + msg)


def _p2sh_p2wpkh_hash(pubkey: bytes) -> bytes:
    return hash160(witness_script(0, hash160(pubkey)))


def verify_message(
    message: str,
    signature_b64: str,
    address: str,
    network: NetworkParams = MAINNET,
) -> bool:
    """True if `signature_b64` is a valid signature of `message` by `address`. Never raises."""
    try:
        return _verify(message, signature_b64, address, network)
    except (ValueError, TypeError, binascii.Error):
        return False


def _verify(message: str, signature_b64: str, address: str, network: NetworkParams) -> bool:
    decoded = decode_address(address, network)
    if decoded is None:
        return False

    sig = base64.b64decode(signature_b64, validate=True)
    if len(sig) != 65:
        return False

    header = sig[0]
    if header < 27 or header > 42:
        return False

    flag = header - 27
    recid = flag & 3
    compressed = header >= 31

    # coincurve expects the recovery id as the last byte.
    recoverable = sig[1:] + bytes([recid])
    pubkey = PublicKey.from_signature_and_message(recoverable, bitcoin_message_hash(message), hasher=None)
    pubkey_bytes = pubkey.format(compressed=compressed)

    kind = decoded.address_type
    program = decoded.program

    if 39 <= header <= 42:
        return kind == "p2wpkh" and program == hash160(pubkey_bytes)

    if 35 <= header <= 38:
        return kind == "p2sh" and program == _p2sh_p2wpkh_hash(pubkey_bytes)

    if not compressed:
        return kind == "p2pkh" and program == hash160(pubkey_bytes)

    if kind in ("p2pkh", "p2wpkh"):
        return program == hash160(pubkey_bytes)
    if kind == "p2sh":
        return program == _p2sh_p2wpkh_hash(pubkey_bytes)
    return False
