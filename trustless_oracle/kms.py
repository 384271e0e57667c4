"""
ROFL appd client: key generation and transaction submission.

By default the service is reached over the unix socket `/run/rofl-appd.sock`;
an `http(s)://` URL selects plain HTTP instead, any other value is taken as
an alternative socket path.
"""

from typing import Any, Optional

import httpx
import structlog

logger = structlog.get_logger()

ROFL_SOCKET_PATH = "/run/rofl-appd.sock"


class RoflClient:
    """Async client for the ROFL appd REST API."""

    def __init__(
        self,
        url: str = "",
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.url = url
        self.timeout = timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

        if url.startswith("http"):
            self.base_url = url.rstrip("/")
            self.socket_path: Optional[str] = None
        else:
            self.base_url = "http://localhost"
            self.socket_path = url or ROFL_SOCKET_PATH

        logger.info("rofl_client_initialized", base_url=self.base_url, socket=self.socket_path)

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            transport = self._transport
            if transport is None and self.socket_path:
                transport = httpx.AsyncHTTPTransport(uds=self.socket_path)
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout,
                transport=transport,
            )
        return self._client

    async def close(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    async def _post(self, path: str, payload: dict[str, Any]) -> Any:
        client = await self._get_client()
        response = await client.post(path, json=payload)
        response.raise_for_status()
        return response.json()

    async def generate_key(self, key_id: str) -> str:
        """Fetch (or deterministically derive) the secp256k1 secret for `key_id`."""
        data = await self._post("/rofl/v1/keys/generate", {"key_id": key_id, "kind": "secp256k1"})
        key = data.get("key") if isinstance(data, dict) else None
        if not key:
            raise ValueError("Key-custody service returned no key")
        return key

    async def submit_tx(self, to: str, data: str, gas_limit: int, value: int = 0) -> Any:
        """Sign an EVM transaction with the app key and submit it."""
        payload = {
            "tx": {
                "kind": "eth",
                "data": {
                    "gas_limit": gas_limit,
                    "to": to.removeprefix("0x"),
                    "value": value,
                    "data": data.removeprefix("0x"),
                },
            },
            "encrypted": False,
        }
        result = await self._post("/rofl/v1/tx/sign-submit", payload)
        logger.info("rofl_tx_submitted", to=to)
        return result
