"""
Bridge contract access on the EVM side.
"""

import asyncio
from dataclasses import dataclass
from enum import IntEnum
from typing import Any, Optional

import structlog
from eth_account.signers.local import LocalAccount
from web3 import AsyncWeb3, Web3

from .connection import ConnectionManager
from .errors import ContractTransactionError

logger = structlog.get_logger()

DEFAULT_GAS_LIMIT = 500_000
SET_ORACLE_GAS_LIMIT = 100_000
RECEIPT_TIMEOUT_SECONDS = 120


# Bridge contract ABI (minimal)
BRIDGE_ABI = [
    {
        "inputs": [],
        "name": "oracle",
        "outputs": [{"name": "", "type": "address"}],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "inputs": [{"name": "_oracle", "type": "address"}],
        "name": "setOracle",
        "outputs": [],
        "stateMutability": "nonpayable",
        "type": "function",
    },
    {
        "inputs": [],
        "name": "bitcoinAddress",
        "outputs": [{"name": "", "type": "string"}],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "inputs": [],
        "name": "publicKey",
        "outputs": [{"name": "", "type": "bytes"}],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "inputs": [],
        "name": "domain",
        "outputs": [{"name": "", "type": "string"}],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "inputs": [
            {"name": "siweMsg", "type": "string"},
            {
                "components": [
                    {"name": "r", "type": "bytes32"},
                    {"name": "s", "type": "bytes32"},
                    {"name": "v", "type": "uint256"},
                ],
                "name": "sig",
                "type": "tuple",
            },
        ],
        "name": "login",
        "outputs": [{"name": "", "type": "bytes"}],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "inputs": [
            {"name": "sighash", "type": "bytes32"},
            {"name": "token", "type": "bytes"},
        ],
        "name": "sign",
        "outputs": [
            {"name": "nonce", "type": "uint256"},
            {"name": "r", "type": "uint256"},
            {"name": "s", "type": "uint256"},
            {"name": "v", "type": "uint8"},
        ],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "inputs": [
            {"name": "to", "type": "address"},
            {"name": "amount", "type": "uint256"},
            {"name": "txHash", "type": "bytes32"},
        ],
        "name": "mint",
        "outputs": [],
        "stateMutability": "nonpayable",
        "type": "function",
    },
    {
        "inputs": [{"name": "burnId", "type": "uint256"}],
        "name": "burnData",
        "outputs": [
            {"name": "user", "type": "address"},
            {"name": "amount", "type": "uint256"},
            {"name": "bitcoinAddress", "type": "string"},
            {"name": "status", "type": "uint8"},
            {"name": "transactionHash", "type": "bytes32"},
        ],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "inputs": [
            {"name": "burnId", "type": "uint256"},
            {"name": "rawTx", "type": "bytes"},
            {"name": "txHash", "type": "bytes32"},
        ],
        "name": "burnSigned",
        "outputs": [],
        "stateMutability": "nonpayable",
        "type": "function",
    },
    {
        "inputs": [{"name": "burnId", "type": "uint256"}],
        "name": "validateBurn",
        "outputs": [],
        "stateMutability": "nonpayable",
        "type": "function",
    },
    {
        "anonymous": False,
        "inputs": [
            {"indexed": False, "name": "txHash", "type": "bytes32"},
            {"indexed": False, "name": "signature", "type": "string"},
            {"indexed": False, "name": "ethereumAddress", "type": "address"},
        ],
        "name": "TransactionProofSubmitted",
        "type": "event",
    },
    {
        "anonymous": False,
        "inputs": [{"indexed": False, "name": "burnId", "type": "uint256"}],
        "name": "BurnGenerateTransaction",
        "type": "event",
    },
    {
        "anonymous": False,
        "inputs": [{"indexed": False, "name": "burnId", "type": "uint256"}],
        "name": "BurnValidateTransaction",
        "type": "event",
    },
]

EVENT_NAMES = (
    "TransactionProofSubmitted",
    "BurnGenerateTransaction",
    "BurnValidateTransaction",
)


class BurnStatus(IntEnum):
    REQUESTED = 0
    GENERATE_REQUESTED = 1
    SIGNED = 2
    VALIDATED = 3


@dataclass(frozen=True)
class BurnRecord:
    """A burn as stored by the bridge contract."""

    burn_id: int
    user: str
    amount_sats: int
    destination_address: str
    status: BurnStatus
    transaction_hash: bytes  # 32 bytes, display-order txid

    @property
    def transaction_hash_hex(self) -> str:
        return self.transaction_hash.hex()

    @property
    def awaiting_signature(self) -> bool:
        return self.status in (BurnStatus.REQUESTED, BurnStatus.GENERATE_REQUESTED)


def to_bytes32(value: bytes | str) -> bytes:
    """Normalize a 32-byte value given as bytes or (0x-prefixed) hex."""
    if isinstance(value, str):
        value = bytes.fromhex(value.removeprefix("0x"))
    if len(value) != 32:
        raise ValueError(f"Expected 32 bytes, got {len(value)}")
    return value


class BridgeContract:
    """
    Async client for the bridge contract.

    Every RPC goes through the connection manager so a dropped endpoint is
    replaced transparently. State-changing calls are signed by the oracle
    account and waited on; a reverted receipt raises ContractTransactionError.
    """

    def __init__(
        self,
        connection: ConnectionManager,
        contract_address: str,
        account: LocalAccount,
        gas_limit: int = DEFAULT_GAS_LIMIT,
    ):
        self.connection = connection
        self.address = Web3.to_checksum_address(contract_address)
        self.account = account
        self.gas_limit = gas_limit
        self._tx_lock = asyncio.Lock()
        self._chain_id: Optional[int] = None

    def _contract(self, w3: AsyncWeb3) -> Any:
        return w3.eth.contract(address=self.address, abi=BRIDGE_ABI)

    async def _view(self, name: str, *args: Any) -> Any:
        async def call(w3: AsyncWeb3) -> Any:
            return await getattr(self._contract(w3).functions, name)(*args).call()

        return await self.connection.call(call)

    # -- reads ---------------------------------------------------------------

    async def chain_id(self) -> int:
        if self._chain_id is None:
            self._chain_id = await self.connection.call(lambda w3: w3.eth.chain_id)
        return self._chain_id

    async def block_number(self) -> int:
        return await self.connection.call(lambda w3: w3.eth.block_number)

    async def oracle(self) -> str:
        return await self._view("oracle")

    async def bitcoin_address(self) -> str:
        return await self._view("bitcoinAddress")

    async def public_key(self) -> bytes:
        return bytes(await self._view("publicKey"))

    async def domain(self) -> str:
        return await self._view("domain")

    async def burn_data(self, burn_id: int) -> BurnRecord:
        user, amount, bitcoin_address, status, transaction_hash = await self._view("burnData", burn_id)
        return BurnRecord(
            burn_id=burn_id,
            user=user,
            amount_sats=int(amount),
            destination_address=bitcoin_address,
            status=BurnStatus(status),
            transaction_hash=bytes(transaction_hash),
        )

    async def login(self, message: str, signature: tuple[int, int, int]) -> bytes:
        r, s, v = signature
        rsv = (r.to_bytes(32, "big"), s.to_bytes(32, "big"), v)
        return bytes(await self._view("login", message, rsv))

    async def sign(self, sighash: bytes, token: bytes) -> tuple[int, int, int, int]:
        nonce, r, s, v = await self._view("sign", sighash, token)
        return int(nonce), int(r), int(s), int(v)

    async def get_events(self, event_name: str, from_block: int, to_block: int) -> list[Any]:
        async def call(w3: AsyncWeb3) -> list[Any]:
            event = getattr(self._contract(w3).events, event_name)
            return list(await event.get_logs(from_block=from_block, to_block=to_block))

        return await self.connection.call(call)

    # -- writes --------------------------------------------------------------

    def encode_call(self, name: str, *args: Any) -> str:
        """ABI-encoded calldata for `name(*args)` as 0x-prefixed hex."""
        contract = Web3().eth.contract(address=self.address, abi=BRIDGE_ABI)
        return contract.encode_abi(name, args=list(args))

    async def _transact(self, name: str, *args: Any) -> str:
        async with self._tx_lock:
            chain_id = await self.chain_id()

            async def build(w3: AsyncWeb3) -> bytes:
                nonce = await w3.eth.get_transaction_count(self.account.address, "pending")
                gas_price = await w3.eth.gas_price
                tx = await getattr(self._contract(w3).functions, name)(*args).build_transaction(
                    {
                        "from": self.account.address,
                        "nonce": nonce,
                        "gas": self.gas_limit,
                        "gasPrice": gas_price,
                        "chainId": chain_id,
                    }
                )
                return bytes(self.account.sign_transaction(tx).raw_transaction)

            raw = await self.connection.call(build)
            tx_hash = await self.connection.call(lambda w3: w3.eth.send_raw_transaction(raw))
            tx_hash_hex = Web3.to_hex(tx_hash)
            logger.info("contract_tx_sent", function=name, tx_hash=tx_hash_hex)

            receipt = await self.connection.call(
                lambda w3: w3.eth.wait_for_transaction_receipt(tx_hash, timeout=RECEIPT_TIMEOUT_SECONDS)
            )

        if receipt["status"] != 1:
            logger.error("contract_tx_reverted", function=name, tx_hash=tx_hash_hex)
            raise ContractTransactionError(name, tx_hash_hex)

        logger.info("contract_tx_confirmed", function=name, tx_hash=tx_hash_hex, gas_used=receipt["gasUsed"])
        return tx_hash_hex

    async def mint(self, claimant: str, amount_sats: int, tx_hash: bytes) -> str:
        return await self._transact("mint", Web3.to_checksum_address(claimant), amount_sats, to_bytes32(tx_hash))

    async def burn_signed(self, burn_id: int, raw_tx: bytes, tx_hash: bytes) -> str:
        return await self._transact("burnSigned", burn_id, raw_tx, to_bytes32(tx_hash))

    async def validate_burn(self, burn_id: int) -> str:
        return await self._transact("validateBurn", burn_id)
