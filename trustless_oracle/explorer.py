"""
Esplora-compatible block explorer client (mempool.space, Blockstream).
"""

from dataclasses import dataclass
from typing import Any, Optional

import httpx


@dataclass
class EsploraConfig:
    """Explorer configuration."""

    base_url: str
    timeout: float = 5.0


@dataclass(frozen=True)
class AddressUtxo:
    """Unspent output as listed by `/address/{address}/utxo`."""

    txid: str
    vout: int
    value_sats: int
    confirmed: bool
    block_height: Optional[int] = None


class EsploraClient:
    """Async client for Esplora-compatible explorers."""

    def __init__(self, config: EsploraConfig, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.config = config
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.config.base_url.rstrip("/"),
                timeout=self.config.timeout,
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    async def _get_json(self, path: str) -> Any:
        client = await self._get_client()
        response = await client.get(path)
        response.raise_for_status()
        return response.json()

    async def get_tip_height(self) -> int:
        client = await self._get_client()
        response = await client.get("/blocks/tip/height")
        response.raise_for_status()
        return int(response.text)

    async def get_tx(self, txid: str) -> Optional[dict[str, Any]]:
        """Transaction JSON, or None if the explorer does not know it."""
        client = await self._get_client()
        response = await client.get(f"/tx/{txid}")
        if response.status_code in (400, 404):
            return None
        response.raise_for_status()
        data = response.json()
        if not isinstance(data, dict):
            raise ValueError("Invalid response from explorer /tx endpoint")
        return data

    async def get_tx_hex(self, txid: str) -> Optional[str]:
        client = await self._get_client()
        response = await client.get(f"/tx/{txid}/hex")
        if response.status_code in (400, 404):
            return None
        response.raise_for_status()
        return response.text.strip()

    async def get_address_utxos(self, address: str) -> list[AddressUtxo]:
        data = await self._get_json(f"/address/{address}/utxo")
        if not isinstance(data, list):
            raise ValueError("Invalid response from explorer /address/utxo endpoint")

        utxos = []
        for entry in data:
            if not isinstance(entry, dict):
                continue
            status = entry.get("status") if isinstance(entry.get("status"), dict) else {}
            utxos.append(
                AddressUtxo(
                    txid=entry["txid"],
                    vout=int(entry["vout"]),
                    value_sats=int(entry["value"]),
                    confirmed=bool(status.get("confirmed")),
                    block_height=status.get("block_height"),
                )
            )
        return utxos

    async def get_fee_estimates(self) -> dict[str, float]:
        """Map of confirmation target (as string) to sat/vB."""
        data = await self._get_json("/fee-estimates")
        if not isinstance(data, dict):
            raise ValueError("Invalid response from explorer /fee-estimates endpoint")
        return data

    async def broadcast(self, raw_tx_hex: str) -> str:
        """POST /tx; returns the txid reported by the explorer."""
        client = await self._get_client()
        response = await client.post("/tx", content=raw_tx_hex)
        response.raise_for_status()
        return response.text.strip()
