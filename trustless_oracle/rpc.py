"""
Bitcoin Core JSON-RPC client.
"""

import json
from decimal import Decimal
from typing import Any, Optional

import httpx
from pydantic import BaseModel

# Bitcoin Core error code for unknown transactions / blocks
RPC_INVALID_ADDRESS_OR_KEY = -5


class BitcoinRPCConfig(BaseModel):
    """Configuration for Bitcoin RPC connection."""

    url: str = "http://localhost:8332"
    user: str = ""
    password: str = ""
    wallet: Optional[str] = None
    timeout: float = 30.0


class BitcoinRPCError(Exception):
    """Error from Bitcoin RPC call."""

    def __init__(self, code: int, message: str):
        self.code = code
        self.message = message
        super().__init__(f"RPC Error {code}: {message}")

    @property
    def not_found(self) -> bool:
        return self.code == RPC_INVALID_ADDRESS_OR_KEY


class BitcoinRPC:
    """
    Async Bitcoin Core RPC client.

    Amounts in responses are parsed as `Decimal`, never as float.
    """

    def __init__(self, config: BitcoinRPCConfig, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.config = config
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None
        self._request_id = 0

    @property
    def endpoint(self) -> str:
        url = self.config.url.rstrip("/")
        if self.config.wallet:
            url = f"{url}/wallet/{self.config.wallet}"
        return url

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            auth = None
            if self.config.user and self.config.password:
                auth = (self.config.user, self.config.password)
            self._client = httpx.AsyncClient(
                timeout=self.config.timeout,
                auth=auth,
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    async def _call(self, method: str, params: list[Any] | None = None) -> Any:
        """Make RPC call."""
        self._request_id += 1
        payload = {
            "jsonrpc": "1.0",
            "id": self._request_id,
            "method": method,
            "params": params or [],
        }

        client = await self._get_client()
        response = await client.post(self.endpoint, json=payload)

        # Bitcoin Core answers RPC errors with HTTP 404/500 and a JSON body
        try:
            result = json.loads(response.text, parse_float=Decimal)
        except json.JSONDecodeError:
            response.raise_for_status()
            raise

        if not isinstance(result, dict):
            response.raise_for_status()
            raise ValueError(f"Unexpected RPC response for {method}")

        if result.get("error"):
            error = result["error"]
            raise BitcoinRPCError(error.get("code", -1), error.get("message", "Unknown error"))

        response.raise_for_status()
        return result.get("result")

    async def get_block_count(self) -> int:
        """Get current block height."""
        return await self._call("getblockcount")

    async def get_block_header(self, block_hash: str, verbose: bool = True) -> dict[str, Any]:
        """Get block header."""
        return await self._call("getblockheader", [block_hash, verbose])

    async def get_raw_transaction(self, txid: str, verbose: bool = False) -> str | dict[str, Any]:
        """
        Get raw transaction.
        If verbose=False, returns hex string.
        If verbose=True, returns decoded transaction.
        """
        return await self._call("getrawtransaction", [txid, verbose])

    async def estimate_smart_fee(self, conf_target: int = 1) -> dict[str, Any]:
        """Returns {"feerate": Decimal BTC/kvB, "blocks": n} or {"errors": [...]}."""
        return await self._call("estimatesmartfee", [conf_target])

    async def send_raw_transaction(self, raw_tx_hex: str) -> str:
        """Broadcast a transaction; returns its txid."""
        return await self._call("sendrawtransaction", [raw_tx_hex])
