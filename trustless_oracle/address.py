"""
Bitcoin address encoding and decoding utilities.

Supports P2PKH and P2SH (base58check) and segwit v0/v1+ (bech32 / bech32m)
addresses on mainnet, testnet and regtest.
"""

import hashlib
from dataclasses import dataclass
from typing import Optional

from .bitcoin import hash160, p2pkh_script, p2sh_script, sha256, witness_script

# Bech32 charset
BECH32_CHARSET = "qpzry9x8gf2tvdw0s3jn54khce6mua7l"

# Base58 charset
BASE58_CHARSET = "123456789ABCDEFGHJKLMNPQRSTUVWXYZabcdefghijkmnopqrstuvwxyz"

BECH32_CONST = 1
BECH32M_CONST = 0x2BC830A3


@dataclass(frozen=True)
class NetworkParams:
    """Address prefixes of a Bitcoin network."""

    name: str
    bech32_hrp: str
    p2pkh_version: int
    p2sh_version: int


MAINNET = NetworkParams("mainnet", "bc", 0x00, 0x05)
TESTNET = NetworkParams("testnet", "tb", 0x6F, 0xC4)
REGTEST = NetworkParams("regtest", "bcrt", 0x6F, 0xC4)

_NETWORKS = {n.name: n for n in (MAINNET, TESTNET, REGTEST)}


def get_network(name: str) -> NetworkParams:
    try:
        return _NETWORKS[name]
    except KeyError:
        raise ValueError(f"Unknown Bitcoin network: {name}") from None


# ---------------------------------------------------------------------------
# Base58
# ---------------------------------------------------------------------------


def base58_encode(data: bytes) -> str:
    num = int.from_bytes(data, "big")
    encoded = ""
    while num > 0:
        num, rem = divmod(num, 58)
        encoded = BASE58_CHARSET[rem] + encoded
    # Leading zero bytes are encoded as '1'
    pad = len(data) - len(data.lstrip(b"\x00"))
    return "1" * pad + encoded


def base58check_encode(version: int, payload: bytes) -> str:
    data = bytes([version]) + payload
    checksum = hashlib.sha256(hashlib.sha256(data).digest()).digest()[:4]
    return base58_encode(data + checksum)


def base58check_decode(addr: str) -> Optional[tuple[int, bytes]]:
    """
    Decode a base58check encoded string.

    Returns (version, payload) or None if invalid.
    """
    if not addr:
        return None

    num = 0
    for c in addr:
        if c not in BASE58_CHARSET:
            return None
        num = num * 58 + BASE58_CHARSET.index(c)

    pad = len(addr) - len(addr.lstrip("1"))
    body = num.to_bytes((num.bit_length() + 7) // 8, "big") if num else b""
    combined = b"\x00" * pad + body
    if len(combined) < 5:
        return None

    checksum = combined[-4:]
    data = combined[:-4]
    expected = hashlib.sha256(hashlib.sha256(data).digest()).digest()[:4]
    if checksum != expected:
        return None

    return data[0], data[1:]


# ---------------------------------------------------------------------------
# Bech32 / Bech32m
# ---------------------------------------------------------------------------


def _bech32_polymod(values: list[int]) -> int:
    """Internal Bech32 polymod calculation."""
    GEN = [0x3B6A57B2, 0x26508E6D, 0x1EA119FA, 0x3D4233DD, 0x2A1462B3]
    chk = 1
    for v in values:
        b = chk >> 25
        chk = ((chk & 0x1FFFFFF) << 5) ^ v
        for i in range(5):
            if (b >> i) & 1:
                chk ^= GEN[i]
    return chk


def _bech32_hrp_expand(hrp: str) -> list[int]:
    """Expand HRP for checksum calculation."""
    return [ord(c) >> 5 for c in hrp] + [0] + [ord(c) & 31 for c in hrp]


def _bech32_create_checksum(hrp: str, data: list[int], const: int) -> list[int]:
    values = _bech32_hrp_expand(hrp) + data
    polymod = _bech32_polymod(values + [0, 0, 0, 0, 0, 0]) ^ const
    return [(polymod >> 5 * (5 - i)) & 31 for i in range(6)]


def bech32_encode(hrp: str, data: list[int], const: int = BECH32_CONST) -> str:
    combined = data + _bech32_create_checksum(hrp, data, const)
    return hrp + "1" + "".join(BECH32_CHARSET[d] for d in combined)


def bech32_decode(addr: str) -> Optional[tuple[str, list[int], int]]:
    """
    Decode a bech32 or bech32m string.

    Returns (hrp, data, checksum_const) or None if invalid.
    """
    if any(ord(c) < 33 or ord(c) > 126 for c in addr):
        return None
    if addr.lower() != addr and addr.upper() != addr:
        return None

    addr = addr.lower()
    pos = addr.rfind("1")
    if pos < 1 or pos + 7 > len(addr) or len(addr) > 90:
        return None

    hrp = addr[:pos]
    data_part = addr[pos + 1 :]

    if not all(c in BECH32_CHARSET for c in data_part):
        return None

    data = [BECH32_CHARSET.index(c) for c in data_part]
    const = _bech32_polymod(_bech32_hrp_expand(hrp) + data)
    if const not in (BECH32_CONST, BECH32M_CONST):
        return None

    return hrp, data[:-6], const


def convertbits(data: list[int] | bytes, frombits: int, tobits: int, pad: bool = True) -> Optional[list[int]]:
    """Convert between bit sizes."""
    acc = 0
    bits = 0
    ret = []
    maxv = (1 << tobits) - 1
    max_acc = (1 << (frombits + tobits - 1)) - 1

    for value in data:
        if value < 0 or (value >> frombits):
            return None
        acc = ((acc << frombits) | value) & max_acc
        bits += frombits
        while bits >= tobits:
            bits -= tobits
            ret.append((acc >> bits) & maxv)

    if pad:
        if bits:
            ret.append((acc << (tobits - bits)) & maxv)
    elif bits >= frombits or ((acc << (tobits - bits)) & maxv):
        return None

    return ret


def segwit_encode(hrp: str, version: int, program: bytes) -> str:
    """Encode a witness program (BIP173 for v0, BIP350 for v1+)."""
    const = BECH32_CONST if version == 0 else BECH32M_CONST
    five_bit = convertbits(program, 8, 5)
    if five_bit is None:
        raise ValueError("Invalid witness program")
    return bech32_encode(hrp, [version] + five_bit, const)


def segwit_decode(hrp: str, addr: str) -> Optional[tuple[int, bytes]]:
    """
    Decode a segwit address for the given HRP.

    Returns (witness_version, program) or None if invalid.
    """
    result = bech32_decode(addr)
    if result is None:
        return None

    got_hrp, data, const = result
    if got_hrp != hrp or len(data) < 1:
        return None

    version = data[0]
    if version > 16:
        return None
    if (version == 0) != (const == BECH32_CONST):
        return None

    decoded = convertbits(data[1:], 5, 8, False)
    if decoded is None or len(decoded) < 2 or len(decoded) > 40:
        return None
    if version == 0 and len(decoded) not in (20, 32):
        return None

    return version, bytes(decoded)


# ---------------------------------------------------------------------------
# Address construction
# ---------------------------------------------------------------------------


def pubkey_to_p2pkh_address(pubkey: bytes, network: NetworkParams = MAINNET) -> str:
    return base58check_encode(network.p2pkh_version, hash160(pubkey))


def pubkey_to_p2wpkh_address(pubkey: bytes, network: NetworkParams = MAINNET) -> str:
    return segwit_encode(network.bech32_hrp, 0, hash160(pubkey))


def pubkey_to_p2sh_p2wpkh_address(pubkey: bytes, network: NetworkParams = MAINNET) -> str:
    redeem_script = witness_script(0, hash160(pubkey))
    return base58check_encode(network.p2sh_version, hash160(redeem_script))


def script_to_p2sh_address(script: bytes, network: NetworkParams = MAINNET) -> str:
    return base58check_encode(network.p2sh_version, hash160(script))


def script_to_p2wsh_address(script: bytes, network: NetworkParams = MAINNET) -> str:
    """P2WSH commits to SHA256 of the witness script (not HASH160)."""
    return segwit_encode(network.bech32_hrp, 0, sha256(script))


# ---------------------------------------------------------------------------
# Address decoding
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class DecodedAddress:
    """A decoded address: its type and the hash / witness program it commits to."""

    address_type: str  # "p2pkh", "p2sh", "p2wpkh", "p2wsh", "p2tr", "witness_unknown"
    program: bytes
    witness_version: Optional[int] = None

    @property
    def output_script(self) -> bytes:
        if self.address_type == "p2pkh":
            return p2pkh_script(self.program)
        if self.address_type == "p2sh":
            return p2sh_script(self.program)
        if self.witness_version is None:
            raise ValueError(f"No output script for {self.address_type} address")
        return witness_script(self.witness_version, self.program)


def decode_address(addr: str, network: NetworkParams = MAINNET) -> Optional[DecodedAddress]:
    """
    Decode an address valid on `network`.

    Returns None if the address is malformed or belongs to another network.
    """
    if not addr:
        return None

    if addr.lower().startswith(network.bech32_hrp + "1"):
        result = segwit_decode(network.bech32_hrp, addr)
        if result is None:
            return None
        version, program = result
        if version == 0:
            kind = "p2wpkh" if len(program) == 20 else "p2wsh"
        elif version == 1 and len(program) == 32:
            kind = "p2tr"
        else:
            kind = "witness_unknown"
        return DecodedAddress(kind, program, version)

    decoded = base58check_decode(addr)
    if decoded is None:
        return None
    version, payload = decoded
    if len(payload) != 20:
        return None
    if version == network.p2pkh_version:
        return DecodedAddress("p2pkh", payload)
    if version == network.p2sh_version:
        return DecodedAddress("p2sh", payload)
    return None


def address_to_output_script(addr: str, network: NetworkParams = MAINNET) -> bytes:
    """Return the scriptPubKey paying to `addr`. Raises ValueError if invalid."""
    decoded = decode_address(addr, network)
    if decoded is None:
        raise ValueError(f"Invalid {network.name} address: {addr}")
    return decoded.output_script


def output_script_to_address(script: bytes, network: NetworkParams = MAINNET) -> Optional[str]:
    """Return the address for a standard scriptPubKey, or None for non-standard scripts."""
    if len(script) == 25 and script[:3] == b"\x76\xa9\x14" and script[23:] == b"\x88\xac":
        return base58check_encode(network.p2pkh_version, script[3:23])
    if len(script) == 23 and script[:2] == b"\xa9\x14" and script[22] == 0x87:
        return base58check_encode(network.p2sh_version, script[2:22])
    if 4 <= len(script) <= 42 and script[1] == len(script) - 2:
        op = script[0]
        if op == 0x00:
            version = 0
        elif 0x51 <= op <= 0x60:
            version = op - 0x50
        else:
            return None
        program = script[2:]
        if version == 0 and len(program) not in (20, 32):
            return None
        return segwit_encode(network.bech32_hrp, version, program)
    return None
