"""
Remote signing through the bridge contract.

The Bitcoin key never leaves the contract. The oracle logs in once per
payout with a Sign-In with Ethereum (EIP-4361) message, then asks the
contract's `sign` entry point for raw `(r, s)` values over each sighash and
turns them into DER signatures.
"""

import secrets
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Optional

import structlog
from eth_account.messages import encode_defunct
from eth_account.signers.local import LocalAccount

from .errors import SigningFailure

if TYPE_CHECKING:
    from .evm import BridgeContract

logger = structlog.get_logger()

# secp256k1 group order
SECP256K1_N = 0xFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFEBAAEDCE6AF48A03BBFD25E8CD0364141

SIWE_STATEMENT = "Sign in with Ethereum to access the TrustlessBTC contract"


# ---------------------------------------------------------------------------
# DER
# ---------------------------------------------------------------------------


def to_positive_bytes(value: int) -> bytes:
    """
    Minimal big-endian encoding of a non-negative integer as a DER INTEGER body.

    A zero byte is prepended when the high bit is set so the value does not
    read as negative.
    """
    if value < 0:
        raise ValueError("DER integers must be non-negative")
    raw = value.to_bytes(max(1, (value.bit_length() + 7) // 8), "big")
    if raw[0] & 0x80:
        raw = b"\x00" + raw
    return raw


def encode_der_signature(r: int, s: int) -> bytes:
    """SEQUENCE { INTEGER r, INTEGER s }"""
    r_bytes = to_positive_bytes(r)
    s_bytes = to_positive_bytes(s)
    body = bytes([0x02, len(r_bytes)]) + r_bytes + bytes([0x02, len(s_bytes)]) + s_bytes
    return bytes([0x30, len(body)]) + body


def decode_der_signature(der: bytes) -> tuple[int, int]:
    """
    Parse a strict DER ECDSA signature (without sighash byte).

    Raises ValueError if the encoding is not canonical.
    """
    if len(der) < 8 or der[0] != 0x30 or der[1] != len(der) - 2:
        raise ValueError("Invalid DER sequence")

    values = []
    offset = 2
    for _ in range(2):
        if offset + 2 > len(der) or der[offset] != 0x02:
            raise ValueError("Invalid DER integer tag")
        length = der[offset + 1]
        offset += 2
        body = der[offset : offset + length]
        if length == 0 or len(body) != length:
            raise ValueError("Invalid DER integer length")
        if body[0] & 0x80:
            raise ValueError("Negative DER integer")
        if length > 1 and body[0] == 0x00 and not body[1] & 0x80:
            raise ValueError("Non-minimal DER integer")
        values.append(int.from_bytes(body, "big"))
        offset += length

    if offset != len(der):
        raise ValueError("Trailing data after DER signature")
    return values[0], values[1]


def normalize_s(s: int) -> int:
    """Low-S form (BIP-62): s and N - s are both valid; relay policy requires the low one."""
    return SECP256K1_N - s if s > SECP256K1_N // 2 else s


# ---------------------------------------------------------------------------
# SIWE
# ---------------------------------------------------------------------------


def build_siwe_message(
    domain: str,
    address: str,
    chain_id: int,
    nonce: Optional[str] = None,
    issued_at: Optional[datetime] = None,
    statement: str = SIWE_STATEMENT,
) -> str:
    """EIP-4361 message text."""
    nonce = nonce or secrets.token_hex(8)
    issued_at = issued_at or datetime.now(timezone.utc)
    issued = issued_at.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.") + (
        f"{issued_at.microsecond // 1000:03d}Z"
    )
    return (
        f"{domain} wants you to sign in with your Ethereum account:\n"
        f"{address}\n"
        f"\n"
        f"{statement}\n"
        f"\n"
        f"URI: http://{domain}\n"
        f"Version: 1\n"
        f"Chain ID: {chain_id}\n"
        f"Nonce: {nonce}\n"
        f"Issued At: {issued}"
    )


@dataclass(frozen=True)
class SignatureResult:
    """Raw signature returned by the contract for one sighash."""

    sighash: bytes
    nonce: int
    r: int
    s: int
    recovery_bit: int

    def to_der(self) -> bytes:
        return encode_der_signature(self.r, normalize_s(self.s))


class SignerSession:
    """An authenticated session with the contract signer."""

    def __init__(self, contract: "BridgeContract", token: bytes, public_key: bytes):
        self.contract = contract
        self.token = token
        self.public_key = public_key

    async def sign(self, sighash: bytes) -> SignatureResult:
        if len(sighash) != 32:
            raise SigningFailure(f"sighash must be 32 bytes, got {len(sighash)}")

        nonce, r, s, v = await self.contract.sign(sighash, self.token)

        if not 0 < r < SECP256K1_N or not 0 < s < SECP256K1_N:
            raise SigningFailure("contract returned an out-of-range signature")

        return SignatureResult(sighash=sighash, nonce=nonce, r=r, s=s, recovery_bit=v)


class RemoteSigner:
    """Opens signer sessions by logging the oracle account into the contract."""

    def __init__(self, contract: "BridgeContract", account: LocalAccount):
        self.contract = contract
        self.account = account

    async def login(self) -> SignerSession:
        try:
            domain = await self.contract.domain()
            chain_id = await self.contract.chain_id()
            message = build_siwe_message(domain, self.account.address, chain_id)

            signed = self.account.sign_message(encode_defunct(text=message))
            token = await self.contract.login(message, (signed.r, signed.s, signed.v))
            public_key = await self.contract.public_key()
        except SigningFailure:
            raise
        except Exception as e:
            raise SigningFailure(f"signer login failed: {e}") from e

        logger.debug("signer_session_opened", domain=domain, chain_id=chain_id)
        return SignerSession(self.contract, token, public_key)
