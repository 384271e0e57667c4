"""
Bitcoin data providers and their payload adapters.

Two payload shapes exist: verbose `getrawtransaction` JSON from a node, and
Esplora `/tx/{txid}` JSON from an explorer. Each is parsed into its own
pydantic model and normalized into `TransactionFacts` by the provider that
fetched it, so the rest of the oracle never sees a raw payload.
"""

import asyncio
import math
from abc import ABC, abstractmethod
from decimal import Decimal
from typing import Annotated, Any, Awaitable, Callable, Literal, Optional, TypeVar, Union

import httpx
import structlog
from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

from .address import output_script_to_address
from .bitcoin import btc_to_sats
from .config import ProviderConfig
from .errors import ProviderError
from .explorer import AddressUtxo, EsploraClient, EsploraConfig
from .facts import TrackedAddress, TransactionFacts
from .resolver import AddressResolver, TxInputView
from .rpc import BitcoinRPC, BitcoinRPCConfig, BitcoinRPCError

logger = structlog.get_logger()

T = TypeVar("T")


# ---------------------------------------------------------------------------
# Payload models
# ---------------------------------------------------------------------------


class _Payload(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)


class NodeScriptSig(_Payload):
    hex: str = ""


class NodeScriptPubKey(_Payload):
    hex: str = ""
    address: Optional[str] = None
    addresses: list[str] = Field(default_factory=list)


class NodeInput(_Payload):
    txid: Optional[str] = None
    vout: Optional[int] = None
    coinbase: Optional[str] = None
    script_sig: Optional[NodeScriptSig] = Field(default=None, alias="scriptSig")
    txinwitness: list[str] = Field(default_factory=list)


class NodeOutput(_Payload):
    value: Decimal
    n: int
    script_pub_key: NodeScriptPubKey = Field(alias="scriptPubKey")


class NodeTransaction(_Payload):
    """Verbose `getrawtransaction` result."""

    source: Literal["node"] = "node"
    txid: str
    vin: list[NodeInput]
    vout: list[NodeOutput]
    confirmations: int = 0
    blockhash: Optional[str] = None

    def input_views(self) -> list[TxInputView]:
        return [
            TxInputView(
                prev_txid=inp.txid or "",
                vout=inp.vout or 0,
                script_sig=bytes.fromhex(inp.script_sig.hex) if inp.script_sig else b"",
                witness=tuple(bytes.fromhex(w) for w in inp.txinwitness),
                is_coinbase=inp.coinbase is not None,
            )
            for inp in self.vin
        ]

    def paid_to(self, tracked: TrackedAddress) -> int:
        script_hex = tracked.script_pubkey.hex()
        total = 0
        for out in self.vout:
            spk = out.script_pub_key
            if spk.hex == script_hex or spk.address == tracked.address or tracked.address in spk.addresses:
                total += btc_to_sats(out.value)
        return total


class ExplorerPrevout(_Payload):
    scriptpubkey: str = ""
    scriptpubkey_address: Optional[str] = None
    value: int = 0


class ExplorerInput(_Payload):
    txid: str = ""
    vout: int = 0
    is_coinbase: bool = False
    scriptsig: str = ""
    witness: list[str] = Field(default_factory=list)
    prevout: Optional[ExplorerPrevout] = None


class ExplorerOutput(_Payload):
    value: int
    scriptpubkey: str = ""
    scriptpubkey_address: Optional[str] = None


class ExplorerStatus(_Payload):
    confirmed: bool = False
    block_height: Optional[int] = None
    block_time: Optional[int] = None


class ExplorerTransaction(_Payload):
    """Esplora `/tx/{txid}` result."""

    source: Literal["explorer"] = "explorer"
    txid: str
    vin: list[ExplorerInput]
    vout: list[ExplorerOutput]
    status: ExplorerStatus = Field(default_factory=ExplorerStatus)

    def input_views(self) -> list[TxInputView]:
        return [
            TxInputView(
                prev_txid=inp.txid,
                vout=inp.vout,
                script_sig=bytes.fromhex(inp.scriptsig),
                witness=tuple(bytes.fromhex(w) for w in inp.witness),
                annotated_address=inp.prevout.scriptpubkey_address if inp.prevout else None,
                is_coinbase=inp.is_coinbase,
            )
            for inp in self.vin
        ]

    def paid_to(self, tracked: TrackedAddress) -> int:
        script_hex = tracked.script_pubkey.hex()
        return sum(
            out.value
            for out in self.vout
            if out.scriptpubkey == script_hex or out.scriptpubkey_address == tracked.address
        )


ProviderTransaction = Annotated[
    Union[NodeTransaction, ExplorerTransaction],
    Field(discriminator="source"),
]

_transaction_adapter: TypeAdapter[Union[NodeTransaction, ExplorerTransaction]] = TypeAdapter(
    ProviderTransaction
)


def parse_provider_transaction(source: str, payload: dict[str, Any]) -> Union[NodeTransaction, ExplorerTransaction]:
    """Parse a raw payload into the model for its shape."""
    return _transaction_adapter.validate_python({**payload, "source": source})


# ---------------------------------------------------------------------------
# Providers
# ---------------------------------------------------------------------------


def sat_per_byte_from_btc_per_kb(feerate: Decimal) -> int:
    """BTC/kB -> sat/byte, rounded up."""
    return math.ceil(Decimal(feerate) * 100_000_000 / 1000)


class BitcoinProvider(ABC):
    """
    A single Bitcoin data provider.

    Every call is bounded by the provider's timeout and retried up to its
    retry budget; a call that still fails raises `ProviderError`.
    """

    source: str = ""

    def __init__(self, config: ProviderConfig, tracked: TrackedAddress):
        self.config = config
        self.tracked = tracked
        self.resolver = AddressResolver(tracked.network)

    @property
    def name(self) -> str:
        return self.config.name

    async def _attempt(self, operation: str, call: Callable[[], Awaitable[T]]) -> T:
        last_error: Optional[BaseException] = None
        for attempt in range(self.config.retries + 1):
            try:
                return await asyncio.wait_for(call(), timeout=self.config.timeout)
            except (httpx.HTTPError, BitcoinRPCError, asyncio.TimeoutError, ValueError, KeyError) as e:
                last_error = e
                logger.debug(
                    "provider_call_failed",
                    provider=self.name,
                    operation=operation,
                    attempt=attempt + 1,
                    error=str(e) or type(e).__name__,
                )
        raise ProviderError(self.name, f"{operation} failed: {last_error}") from last_error

    async def _normalize(
        self,
        tx: Union[NodeTransaction, ExplorerTransaction],
        confirmations: int,
        block_height: Optional[int],
    ) -> TransactionFacts:
        senders: list[str] = []
        for view in tx.input_views():
            sender = await self.resolver.resolve_sender(view, self.lookup_prevout_address)
            if sender and sender not in senders:
                senders.append(sender)

        amount = tx.paid_to(self.tracked)
        return TransactionFacts(
            tx_hash=tx.txid,
            amount_sats=amount,
            senders=frozenset(senders),
            receiver_is_tracked=amount > 0,
            confirmations=confirmations,
            provider=self.name,
            block_height=block_height,
        )

    @abstractmethod
    async def fetch_facts(self, tx_hash: str) -> Optional[TransactionFacts]:
        """Facts about `tx_hash`, or None if this provider does not know the transaction."""

    @abstractmethod
    async def lookup_prevout_address(self, txid: str, vout: int) -> Optional[str]:
        """Address paid by output `vout` of `txid`."""

    @abstractmethod
    async def get_raw_transaction_hex(self, txid: str) -> Optional[str]:
        """Serialized transaction, or None if unknown."""

    @abstractmethod
    async def broadcast(self, raw_tx_hex: str) -> str:
        """Submit a signed transaction; returns its txid."""

    @abstractmethod
    async def estimate_fee_rate(self) -> Optional[int]:
        """Next-block fee rate in sat/byte, or None if the provider has no estimate."""

    async def list_utxos(self, address: str) -> Optional[list[AddressUtxo]]:
        """Unspent outputs of `address`, or None if the provider cannot list them."""
        return None

    async def close(self) -> None:
        return None


class NodeProvider(BitcoinProvider):
    """Bitcoin Core style JSON-RPC endpoint."""

    source = "node"

    def __init__(
        self,
        config: ProviderConfig,
        tracked: TrackedAddress,
        rpc: Optional[BitcoinRPC] = None,
    ):
        super().__init__(config, tracked)
        self.rpc = rpc or BitcoinRPC(
            BitcoinRPCConfig(
                url=config.url,
                user=config.username,
                password=config.password,
                wallet=config.wallet,
                timeout=config.timeout,
            )
        )

    async def _get_verbose(self, txid: str) -> Optional[dict[str, Any]]:
        try:
            result = await self.rpc.get_raw_transaction(txid, True)
        except BitcoinRPCError as e:
            if e.not_found:
                return None
            raise
        if not isinstance(result, dict):
            raise ValueError("Expected verbose transaction from getrawtransaction")
        return result

    async def fetch_facts(self, tx_hash: str) -> Optional[TransactionFacts]:
        async def call() -> Optional[TransactionFacts]:
            payload = await self._get_verbose(tx_hash)
            if payload is None:
                return None
            tx = parse_provider_transaction(self.source, payload)
            if not isinstance(tx, NodeTransaction):
                raise ValueError("Expected a node transaction payload")

            block_height = None
            if tx.blockhash and tx.confirmations > 0:
                header = await self.rpc.get_block_header(tx.blockhash)
                block_height = int(header["height"])

            return await self._normalize(tx, tx.confirmations, block_height)

        return await self._attempt("fetch_facts", call)

    async def lookup_prevout_address(self, txid: str, vout: int) -> Optional[str]:
        payload = await self._get_verbose(txid)
        if payload is None:
            return None
        tx = parse_provider_transaction(self.source, payload)
        if not isinstance(tx, NodeTransaction):
            raise ValueError("Expected a node transaction payload")
        for out in tx.vout:
            if out.n != vout:
                continue
            spk = out.script_pub_key
            if spk.address:
                return spk.address
            if spk.addresses:
                return spk.addresses[0]
            return output_script_to_address(bytes.fromhex(spk.hex), self.tracked.network)
        return None

    async def get_raw_transaction_hex(self, txid: str) -> Optional[str]:
        async def call() -> Optional[str]:
            try:
                return await self.rpc.get_raw_transaction(txid, False)
            except BitcoinRPCError as e:
                if e.not_found:
                    return None
                raise

        return await self._attempt("get_raw_transaction", call)

    async def broadcast(self, raw_tx_hex: str) -> str:
        return await self._attempt("broadcast", lambda: self.rpc.send_raw_transaction(raw_tx_hex))

    async def estimate_fee_rate(self) -> Optional[int]:
        async def call() -> Optional[int]:
            result = await self.rpc.estimate_smart_fee(1)
            feerate = result.get("feerate") if isinstance(result, dict) else None
            if feerate is None:
                return None
            return sat_per_byte_from_btc_per_kb(feerate)

        return await self._attempt("estimate_fee_rate", call)

    async def close(self) -> None:
        await self.rpc.close()


class ExplorerProvider(BitcoinProvider):
    """Esplora-compatible HTTP explorer."""

    source = "explorer"

    def __init__(
        self,
        config: ProviderConfig,
        tracked: TrackedAddress,
        client: Optional[EsploraClient] = None,
    ):
        super().__init__(config, tracked)
        self.client = client or EsploraClient(EsploraConfig(base_url=config.url, timeout=config.timeout))

    async def fetch_facts(self, tx_hash: str) -> Optional[TransactionFacts]:
        async def call() -> Optional[TransactionFacts]:
            payload = await self.client.get_tx(tx_hash)
            if payload is None:
                return None
            tx = parse_provider_transaction(self.source, payload)
            if not isinstance(tx, ExplorerTransaction):
                raise ValueError("Expected an explorer transaction payload")

            confirmations = 0
            block_height = tx.status.block_height
            if tx.status.confirmed and block_height is not None:
                tip = await self.client.get_tip_height()
                confirmations = max(0, tip - block_height + 1)

            return await self._normalize(tx, confirmations, block_height)

        return await self._attempt("fetch_facts", call)

    async def lookup_prevout_address(self, txid: str, vout: int) -> Optional[str]:
        payload = await self.client.get_tx(txid)
        if payload is None:
            return None
        tx = parse_provider_transaction(self.source, payload)
        if not isinstance(tx, ExplorerTransaction):
            raise ValueError("Expected an explorer transaction payload")
        if vout < 0 or vout >= len(tx.vout):
            return None
        out = tx.vout[vout]
        if out.scriptpubkey_address:
            return out.scriptpubkey_address
        return output_script_to_address(bytes.fromhex(out.scriptpubkey), self.tracked.network)

    async def get_raw_transaction_hex(self, txid: str) -> Optional[str]:
        return await self._attempt("get_raw_transaction", lambda: self.client.get_tx_hex(txid))

    async def broadcast(self, raw_tx_hex: str) -> str:
        return await self._attempt("broadcast", lambda: self.client.broadcast(raw_tx_hex))

    async def estimate_fee_rate(self) -> Optional[int]:
        async def call() -> Optional[int]:
            estimates = await self.client.get_fee_estimates()
            rate = estimates.get("1")
            if rate is None:
                return None
            return math.ceil(Decimal(str(rate)))

        return await self._attempt("estimate_fee_rate", call)

    async def list_utxos(self, address: str) -> Optional[list[AddressUtxo]]:
        return await self._attempt("list_utxos", lambda: self.client.get_address_utxos(address))

    async def close(self) -> None:
        await self.client.close()


def create_provider(config: ProviderConfig, tracked: TrackedAddress) -> BitcoinProvider:
    if config.kind == "rpc":
        return NodeProvider(config, tracked)
    return ExplorerProvider(config, tracked)
