"""
EVM chain connection with endpoint rotation and bounded reconnection.

Also caches Bitcoin provider clients by provider name so every component
shares one HTTP client per endpoint.
"""

import asyncio
from typing import Any, Awaitable, Callable, Optional, TypeVar

import httpx
import structlog
from web3 import AsyncHTTPProvider, AsyncWeb3
from web3.exceptions import ProviderConnectionError, TimeExhausted

from .config import ProviderConfig
from .errors import ChainConnectionError
from .facts import TrackedAddress
from .providers import BitcoinProvider, create_provider

logger = structlog.get_logger()

T = TypeVar("T")

MAX_RECONNECT_ATTEMPTS = 3
RECONNECT_DELAY_SECONDS = 1.0

CONNECTION_ERROR_KEYWORDS = ("network", "timeout", "timed out", "connection", "connect")

Web3Factory = Callable[[str], AsyncWeb3]


def default_web3_factory(url: str) -> AsyncWeb3:
    return AsyncWeb3(AsyncHTTPProvider(url))


def is_connection_error(error: BaseException) -> bool:
    """True for failures of the transport rather than of the call itself."""
    if isinstance(error, TimeExhausted):
        return False
    if isinstance(error, (ProviderConnectionError, httpx.TransportError, OSError)):
        return True
    message = str(error).lower()
    return any(keyword in message for keyword in CONNECTION_ERROR_KEYWORDS)


class ConnectionManager:
    """
    Owns the EVM web3 handle.

    `call()` runs an RPC against the current endpoint; on a connection error
    it rotates to the next URL (at most MAX_RECONNECT_ATTEMPTS tries,
    RECONNECT_DELAY_SECONDS apart) and retries the call once. Only one
    reconnect runs at a time; concurrent callers wait for it.
    """

    def __init__(
        self,
        rpc_urls: list[str],
        web3_factory: Web3Factory = default_web3_factory,
        reconnect_delay: float = RECONNECT_DELAY_SECONDS,
        max_attempts: int = MAX_RECONNECT_ATTEMPTS,
    ):
        if not rpc_urls:
            raise ValueError("At least one EVM RPC URL is required")
        self.rpc_urls = list(rpc_urls)
        self.web3_factory = web3_factory
        self.reconnect_delay = reconnect_delay
        self.max_attempts = max_attempts

        self._index = 0
        self._w3: Optional[AsyncWeb3] = None
        self._reconnecting: Optional[asyncio.Future[None]] = None
        self._providers: dict[str, BitcoinProvider] = {}

    @property
    def current_url(self) -> str:
        return self.rpc_urls[self._index]

    @property
    def w3(self) -> AsyncWeb3:
        if self._w3 is None:
            raise ChainConnectionError("Not connected. Call connect() first.")
        return self._w3

    async def connect(self) -> AsyncWeb3:
        """Connect to the first reachable URL, starting from the current one."""
        last_error: Optional[BaseException] = None
        for offset in range(len(self.rpc_urls)):
            index = (self._index + offset) % len(self.rpc_urls)
            url = self.rpc_urls[index]
            try:
                w3 = self.web3_factory(url)
                chain_id = await w3.eth.chain_id
            except Exception as e:
                last_error = e
                logger.warning("evm_connect_failed", url=url, error=str(e))
                continue

            self._index = index
            self._w3 = w3
            logger.info("evm_connected", url=url, chain_id=chain_id)
            return w3

        raise ChainConnectionError(f"Failed to connect to any RPC URL. Last error: {last_error}")

    async def reconnect(self) -> None:
        """Rotate to the next URL and connect; shared by concurrent callers."""
        if self._reconnecting is not None:
            logger.debug("evm_reconnect_in_progress")
            await asyncio.shield(self._reconnecting)
            return

        future: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        self._reconnecting = future
        try:
            await self._reconnect_with_backoff()
        except ChainConnectionError as e:
            future.set_exception(e)
            future.exception()
            raise
        except BaseException:
            future.cancel()
            raise
        else:
            future.set_result(None)
        finally:
            self._reconnecting = None

    async def _reconnect_with_backoff(self) -> None:
        for attempt in range(1, self.max_attempts + 1):
            self._index = (self._index + 1) % len(self.rpc_urls)
            logger.info("evm_reconnecting", url=self.current_url, attempt=attempt)
            try:
                await self.connect()
                return
            except ChainConnectionError as e:
                logger.warning("evm_reconnect_failed", attempt=attempt, error=str(e))
                if attempt < self.max_attempts:
                    await asyncio.sleep(self.reconnect_delay)

        raise ChainConnectionError(f"Failed to reconnect after {self.max_attempts} attempts")

    async def call(self, fn: Callable[[AsyncWeb3], Awaitable[T]]) -> T:
        """Run `fn(w3)`; reconnect and retry once on a connection error."""
        if self._w3 is None:
            await self.connect()
        try:
            return await fn(self.w3)
        except Exception as e:
            if not is_connection_error(e):
                raise
            logger.warning("evm_rpc_error", url=self.current_url, error=str(e))
            await self.reconnect()
            return await fn(self.w3)

    # -- Bitcoin provider cache ----------------------------------------------

    def get_provider(self, config: ProviderConfig, tracked: TrackedAddress) -> BitcoinProvider:
        provider = self._providers.get(config.name)
        if provider is None:
            provider = create_provider(config, tracked)
            self._providers[config.name] = provider
        return provider

    async def close(self) -> None:
        for provider in self._providers.values():
            await provider.close()
        self._providers.clear()
        if self._w3 is not None:
            disconnect: Any = getattr(self._w3.provider, "disconnect", None)
            if disconnect is not None:
                await disconnect()
            self._w3 = None
