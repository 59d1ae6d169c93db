"""Jupiter (Solana) aggregator venue adapter."""

import asyncio
import logging
from decimal import Decimal
from typing import Any

import httpx

from chain_gateway.chains.base import from_base_units, to_base_units
from chain_gateway.core.errors import VenueError
from chain_gateway.core.models import Quote, Route, RouteHop, SwapQuoteRequest
from chain_gateway.dex.base import BaseVenueAdapter
from chain_gateway.dex.registry import VenueRegistry

logger = logging.getLogger(__name__)

COMPUTE_UNITS_BASE = 120_000
COMPUTE_UNITS_PER_HOP = 80_000


@VenueRegistry.register
class JupiterVenue(BaseVenueAdapter):
    """Quotes from the Jupiter v6 quote API; route hops mirror Jupiter's route plan."""

    venue_type = "jupiter"

    @property
    def base_url(self) -> str:
        return self.params.get("base_url", "https://quote-api.jup.ag/v6").rstrip("/")

    async def _get_quote(self, params: dict[str, Any]) -> dict[str, Any]:
        try:
            response = await self.context.client.get(f"{self.base_url}/quote", params=params)
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
        mint_in = self.onchain_token(chain, request.token_in)
        mint_out = self.onchain_token(chain, request.token_out)
        info_in, info_out = await asyncio.gather(adapter.get_token_info(mint_in), adapter.get_token_info(mint_out))
        amount_raw = to_base_units(request.amount, info_in.decimals)
        if amount_raw <= 0:
            msg = "Amount is below the token's smallest unit"
            raise VenueError(msg, self.name)

        data = await self._get_quote(
            {
                "inputMint": info_in.address,
                "outputMint": info_out.address,
                "amount": str(amount_raw),
                "slippageBps": int(request.max_slippage * 100),
                "swapMode": "ExactIn",
            }
        )
        try:
            out_raw = int(data["outAmount"])
            impact = Decimal(str(data.get("priceImpactPct") or "0")) * 100
            hops = tuple(
                RouteHop(
                    venue=step["swapInfo"].get("label") or self.name,
                    pool=step["swapInfo"]["ammKey"],
                    token_in=step["swapInfo"]["inputMint"],
                    token_out=step["swapInfo"]["outputMint"],
                )
                for step in data.get("routePlan") or []
            )
        except (KeyError, TypeError, ValueError, ArithmeticError) as e:
            msg = f"Unexpected quote response: {data}"
            raise VenueError(msg, self.name) from e

        gas_units = COMPUTE_UNITS_BASE + COMPUTE_UNITS_PER_HOP * max(len(hops), 1)
        gas_native, gas_usd = await self.gas_costs(chain, gas_units)

        return Quote(
            venue=self.name,
            chain=chain,
            token_in=request.token_in,
            token_out=request.token_out,
            amount_in=request.amount,
            amount_out=from_base_units(out_raw, info_out.decimals),
            price_impact=min(max(impact, Decimal(0)), Decimal(100)),
            gas_units=gas_units,
            gas_cost_native=gas_native,
            gas_cost_usd=gas_usd,
            route=Route(hops=hops),
            valid_until=self.valid_until(),
        )
