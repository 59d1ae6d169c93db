"""1inch aggregation API venue adapter."""

import asyncio
import logging
from decimal import Decimal
from typing import Any

import httpx

from chain_gateway.chains.base import from_base_units, to_base_units
from chain_gateway.core.errors import VenueError
from chain_gateway.core.models import NATIVE, Quote, Route, RouteHop, SwapQuoteRequest
from chain_gateway.dex.base import BaseVenueAdapter
from chain_gateway.dex.registry import VenueRegistry

logger = logging.getLogger(__name__)

NATIVE_PLACEHOLDER = "0xEeeeeEeeeEeEeeEeEeEeeEEEeeeeEeeeeeeeEEeE"
DEFAULT_GAS = 180_000


def price_impact_from_values(
    amount_in: Decimal, price_in: Decimal, amount_out: Decimal, price_out: Decimal
) -> Decimal:
    """Percent of USD value lost between input and output, 0 when unpriced."""
    if price_in <= 0 or price_out <= 0:
        return Decimal(0)
    value_in = amount_in * price_in
    value_out = amount_out * price_out
    if value_in <= 0:
        return Decimal(0)
    return min(max(Decimal(0), (1 - value_out / value_in) * 100), Decimal(100))


@VenueRegistry.register
class OneInchVenue(BaseVenueAdapter):
    """
    Quotes from the 1inch swap API (``/quote``).

    The API routes across its own liquidity sources, so the route is reported
    as a single hop through 1inch.
    """

    venue_type = "oneinch"
    requires_api_key = True

    @property
    def base_url(self) -> str:
        return self.params.get("base_url", "https://api.1inch.dev/swap/v6.0").rstrip("/")

    def _api_token(self, token: str) -> str:
        return NATIVE_PLACEHOLDER if token == NATIVE else token

    async def _get(self, url: str, params: dict[str, Any]) -> dict[str, Any]:
        headers = {"Authorization": f"Bearer {self.settings.api_key}", "Accept": "application/json"}
        try:
            response = await self.context.client.get(url, params=params, headers=headers)
            response.raise_for_status()
            return response.json()
        except httpx.TimeoutException as e:
            msg = f"Request timeout: {e}"
            raise VenueError(msg, self.name) from e
        except httpx.HTTPStatusError as e:
            msg = f"HTTP error {e.response.status_code}: {e.response.text[:200]}"
            raise VenueError(msg, self.name) from e
        except httpx.HTTPError as e:
            msg = f"HTTP request failed: {e}"
            raise VenueError(msg, self.name) from e
        except ValueError as e:
            msg = f"Malformed JSON response: {e}"
            raise VenueError(msg, self.name) from e

    async def quote(self, request: SwapQuoteRequest) -> Quote:
        chain = request.chain
        adapter = self.adapter(chain)
        settings = self.context.chains[chain]
        info_in, info_out = await asyncio.gather(
            adapter.get_token_info(request.token_in),
            adapter.get_token_info(request.token_out),
        )
        amount_raw = to_base_units(request.amount, info_in.decimals)
        if amount_raw <= 0:
            msg = "Amount is below the token's smallest unit"
            raise VenueError(msg, self.name)

        data = await self._get(
            f"{self.base_url}/{settings.chain_id}/quote",
            {
                "src": self._api_token(info_in.address),
                "dst": self._api_token(info_out.address),
                "amount": str(amount_raw),
                "includeGas": "true",
            },
        )
        try:
            out_raw = int(data["dstAmount"])
        except (KeyError, TypeError, ValueError) as e:
            msg = f"Unexpected quote response: {data}"
            raise VenueError(msg, self.name) from e

        amount_out = from_base_units(out_raw, info_out.decimals)
        gas_units = int(data.get("gas") or DEFAULT_GAS)
        (gas_native, gas_usd), price_in, price_out = await asyncio.gather(
            self.gas_costs(chain, gas_units),
            self.context.prices.get_token_price(chain, settings, info_in.address),
            self.context.prices.get_token_price(chain, settings, info_out.address),
        )

        return Quote(
            venue=self.name,
            chain=chain,
            token_in=request.token_in,
            token_out=request.token_out,
            amount_in=request.amount,
            amount_out=amount_out,
            price_impact=price_impact_from_values(request.amount, price_in, amount_out, price_out),
            gas_units=gas_units,
            gas_cost_native=gas_native,
            gas_cost_usd=gas_usd,
            route=Route(
                hops=(RouteHop(venue=self.name, pool="1inch", token_in=info_in.address, token_out=info_out.address),)
            ),
            valid_until=self.valid_until(),
        )
