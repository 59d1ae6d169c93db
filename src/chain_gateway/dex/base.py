"""Base venue adapter class with common quoting functionality."""

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from decimal import Decimal
from typing import ClassVar, TypeVar

import httpx

from chain_gateway.chains.base import BaseChainAdapter
from chain_gateway.core.config import ChainSettings, VenueSettings
from chain_gateway.core.errors import GatewayError, VenueError
from chain_gateway.core.models import NATIVE, Quote, Route, SwapQuoteRequest
from chain_gateway.pricing.defillama import DeFiLlamaPricing

logger = logging.getLogger(__name__)

T = TypeVar("T")


class VenueContext:
    """
    Shared services handed to every venue adapter.

    Parameters
    ----------
    adapters : dict[str, BaseChainAdapter]
        Chain adapters by chain name
    chains : dict[str, ChainSettings]
        Chain settings by chain name
    prices : DeFiLlamaPricing
        USD price source
    client : httpx.AsyncClient | None
        HTTP client for REST venues
    quote_ttl_s : float
        Quote validity window

    """

    def __init__(
        self,
        adapters: dict[str, BaseChainAdapter],
        chains: dict[str, ChainSettings],
        prices: DeFiLlamaPricing,
        client: httpx.AsyncClient | None = None,
        quote_ttl_s: float = 15.0,
    ) -> None:
        self.adapters = adapters
        self.chains = chains
        self.prices = prices
        self.client = client or httpx.AsyncClient(timeout=10.0)
        self.quote_ttl_s = quote_ttl_s


class BaseVenueAdapter(ABC):
    """
    Abstract base class for DEX venue adapters.

    Attributes
    ----------
    venue_type : str
        Registry key of the adapter class (must be set in subclass)
    requires_api_key : bool
        Instances without a resolved API key are not built

    """

    venue_type: ClassVar[str] = ""
    requires_api_key: ClassVar[bool] = False

    def __init__(self, settings: VenueSettings, context: VenueContext) -> None:
        if not self.venue_type:
            msg = f"{self.__class__.__name__} must define 'venue_type' attribute"
            raise ValueError(msg)
        self.settings = settings
        self.context = context
        self.params = settings.params

    @property
    def name(self) -> str:
        return self.settings.id

    @property
    def supported_chains(self) -> list[str]:
        return list(self.settings.chains)

    def supports_chain(self, chain: str) -> bool:
        return chain in self.settings.chains

    def adapter(self, chain: str) -> BaseChainAdapter:
        try:
            return self.context.adapters[chain]
        except KeyError as e:
            msg = f"No chain adapter for {chain}"
            raise VenueError(msg, self.name) from e

    @abstractmethod
    async def quote(self, request: SwapQuoteRequest) -> Quote:
        """
        Produce a quote for the request.

        Raises
        ------
        VenueError
            If the venue cannot quote the pair
        """

    def build_route(self, quote: Quote) -> Route:
        """Route realizing a quote produced by this venue."""
        return quote.route

    def valid_until(self) -> float:
        return time.time() + self.context.quote_ttl_s

    def onchain_token(self, chain: str, token: str) -> str:
        """Replace ``"native"`` with the chain's wrapped native token."""
        if token != NATIVE:
            return token
        wrapped = self.context.chains[chain].wrapped_native
        if wrapped is None:
            msg = f"No wrapped native token configured for {chain}"
            raise VenueError(msg, self.name)
        return wrapped

    def candidate_paths(self, chain: str, token_in: str, token_out: str) -> list[list[str]]:
        """
        Direct path plus two-hop paths through configured intermediates.

        Parameters
        ----------
        chain : str
            Chain name
        token_in : str
            Input token address
        token_out : str
            Output token address

        Returns
        -------
        list[list[str]]
            Token paths, direct first

        """
        paths = [[token_in, token_out]]
        excluded = {token_in.lower(), token_out.lower()}
        for middle in self.context.chains[chain].intermediate_addresses():
            if middle.lower() not in excluded:
                paths.append([token_in, middle, token_out])
        return paths

    async def best_of(self, candidates: list[T], evaluate: Callable[[T], Awaitable[tuple[int, object]]]) -> tuple[T, int, object]:
        """
        Evaluate candidates concurrently and keep the highest output.

        ``evaluate`` returns ``(amount_out_raw, detail)``; candidates that fail
        or yield zero are dropped.

        Raises
        ------
        VenueError
            If no candidate produced an output
        """
        results = await asyncio.gather(*(evaluate(candidate) for candidate in candidates), return_exceptions=True)
        best: tuple[T, int, object] | None = None
        for candidate, result in zip(candidates, results, strict=True):
            if isinstance(result, (VenueError, GatewayError, ValueError)):
                logger.debug("%s: candidate %s rejected: %s", self.name, candidate, result)
                continue
            if isinstance(result, BaseException):
                raise result
            amount_out, detail = result
            if amount_out > 0 and (best is None or amount_out > best[1]):
                best = (candidate, amount_out, detail)
        if best is None:
            msg = "No liquidity on any candidate route"
            raise VenueError(msg, self.name)
        return best

    async def gas_costs(self, chain: str, gas_units: int) -> tuple[Decimal, Decimal | None]:
        """
        Gas cost of a swap in native units and USD.

        Returns
        -------
        tuple[Decimal, Decimal | None]
            Native cost, USD cost (None when the native asset is unpriced)

        """
        adapter = self.adapter(chain)
        gas, native_price = await asyncio.gather(
            adapter.get_gas_price(),
            self.context.prices.get_native_price(chain, self.context.chains[chain]),
        )
        native_cost = adapter.gas_cost_native(gas, gas_units)
        usd = native_cost * native_price if native_price > 0 else None
        return native_cost, usd
