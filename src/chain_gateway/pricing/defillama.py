"""DeFiLlama pricing service for fetching token USD prices."""

import logging
from decimal import Decimal

import httpx

from chain_gateway.core.config import ChainSettings
from chain_gateway.core.models import NATIVE
from chain_gateway.rpc.cache import ResponseCache

logger = logging.getLogger(__name__)


class DeFiLlamaPricing:
    """
    Fetches token prices from DeFiLlama API.

    DeFiLlama provides free, decentralized price data for thousands of tokens
    across multiple chains. Prices are cached with the price TTL; a price of
    ``0`` means the token is unpriced.

    Parameters
    ----------
    base_url : str
        DeFiLlama API base URL
    client : httpx.AsyncClient | None
        Shared HTTP client, created on first use when None
    cache : ResponseCache | None
        Cache for fetched prices
    ttl : float
        Price cache TTL in seconds
    timeout : float
        Request timeout in seconds

    """

    # DeFiLlama chain identifiers that differ from ours
    CHAIN_MAPPING: dict[str, str] = {
        "avalanche": "avax",
        "gnosis": "xdai",
        "zksync": "era",
    }

    def __init__(
        self,
        base_url: str = "https://coins.llama.fi",
        client: httpx.AsyncClient | None = None,
        cache: ResponseCache | None = None,
        ttl: float = 30.0,
        timeout: float = 5.0,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._client = client
        self._owns_client = client is None
        self.cache = cache or ResponseCache(max_entries=1_000)
        self.ttl = ttl
        self.timeout = timeout

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout)
        return self._client

    def format_coin_id(self, chain: str, address: str) -> str:
        """
        Format coin identifier for DeFiLlama API.

        Parameters
        ----------
        chain : str
            Chain name
        address : str
            Token address

        Returns
        -------
        str
            Formatted coin ID (e.g., "ethereum:0x...")

        """
        llama_chain = self.CHAIN_MAPPING.get(chain.lower(), chain.lower())
        return f"{llama_chain}:{address}"

    async def get_prices(self, coin_ids: list[str]) -> dict[str, Decimal]:
        """
        Fetch USD prices for multiple coin identifiers.

        Parameters
        ----------
        coin_ids : list[str]
            Identifiers in "chain:address" or "coingecko:id" format

        Returns
        -------
        dict[str, Decimal]
            Mapping of coin id to USD price (``0`` when unknown)

        """
        result: dict[str, Decimal] = {}
        missing = []
        for coin_id in coin_ids:
            entry = self.cache.get(self.cache.make_key("defillama", "price", coin_id))
            if entry is None:
                missing.append(coin_id)
            else:
                result[coin_id] = entry.value

        if missing:
            prices_data = await self._fetch_batch_prices(missing)
            for coin_id in missing:
                price_info = prices_data.get(coin_id)
                if price_info and "price" in price_info:
                    price = Decimal(str(price_info["price"]))
                    self.cache.set(self.cache.make_key("defillama", "price", coin_id), price, self.ttl)
                else:
                    price = Decimal("0")
                result[coin_id] = price

        return result

    async def get_price(self, chain: str, address: str) -> Decimal:
        """USD price of one token, ``0`` when unknown."""
        coin_id = self.format_coin_id(chain, address)
        return (await self.get_prices([coin_id]))[coin_id]

    async def get_native_price(self, chain: str, settings: ChainSettings) -> Decimal:
        """USD price of a chain's native asset, ``0`` when unknown."""
        if settings.price_id:
            return (await self.get_prices([settings.price_id]))[settings.price_id]
        if settings.wrapped_native:
            return await self.get_price(chain, settings.wrapped_native)
        return Decimal("0")

    async def get_token_price(self, chain: str, settings: ChainSettings, token: str) -> Decimal:
        """USD price of a token address or the native asset."""
        if token == NATIVE:
            return await self.get_native_price(chain, settings)
        return await self.get_price(chain, token)

    async def _fetch_batch_prices(self, coin_ids: list[str]) -> dict:
        """
        Fetch prices from DeFiLlama API.

        Parameters
        ----------
        coin_ids : list[str]
            Coin identifiers

        Returns
        -------
        dict
            Raw ``coins`` mapping, empty when the request fails

        """
        url = f"{self.base_url}/prices/current/{','.join(coin_ids)}"
        try:
            response = await self.client.get(url)
            response.raise_for_status()
            return response.json().get("coins", {})
        except httpx.HTTPError as e:
            logger.warning("DeFiLlama price request failed: %s", e)
            return {}
        except ValueError as e:
            logger.warning("DeFiLlama returned malformed JSON: %s", e)
            return {}

    async def close(self) -> None:
        """Close HTTP client."""
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> "DeFiLlamaPricing":
        return self

    async def __aexit__(self, exc_type: type, exc_val: Exception, exc_tb: object) -> None:
        await self.close()
