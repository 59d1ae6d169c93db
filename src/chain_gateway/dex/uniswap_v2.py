"""Constant-product (Uniswap V2 style) venue adapter.

One class serves every V2 fork; instances differ by router, factory and fee
(Uniswap V2, PancakeSwap V2, QuickSwap, SushiSwap, Camelot).
"""

import asyncio
import logging
from decimal import Decimal

from eth_utils import to_checksum_address

from chain_gateway.chains.abi import decode_result, encode_call
from chain_gateway.chains.base import from_base_units, to_base_units
from chain_gateway.chains.evm import EVMChainAdapter
from chain_gateway.core.errors import VenueError
from chain_gateway.core.models import Quote, Route, RouteHop, SwapQuoteRequest
from chain_gateway.dex.base import BaseVenueAdapter
from chain_gateway.dex.registry import VenueRegistry

logger = logging.getLogger(__name__)

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"
GAS_BASE = 60_000
GAS_PER_HOP = 60_000


@VenueRegistry.register
class UniswapV2Venue(BaseVenueAdapter):
    """
    Quotes through the router's ``getAmountsOut``.

    Price impact compares the routed output against the fee-adjusted spot
    rate implied by each pair's reserves, end to end over all hops.
    """

    venue_type = "uniswap_v2"

    @property
    def router(self) -> str:
        return self.params["router"]

    @property
    def factory(self) -> str:
        return self.params["factory"]

    @property
    def fee(self) -> Decimal:
        return Decimal(str(self.params.get("fee_bps", 30))) / Decimal(10_000)

    def _evm(self, chain: str) -> EVMChainAdapter:
        adapter = self.adapter(chain)
        if not isinstance(adapter, EVMChainAdapter):
            msg = f"{self.name} needs an EVM chain, got {chain}"
            raise VenueError(msg, self.name)
        return adapter

    async def _amounts_out(self, adapter: EVMChainAdapter, path: list[str], amount_raw: int) -> tuple[int, list[int]]:
        data = encode_call("getAmountsOut(uint256,address[])", ["uint256", "address[]"], [amount_raw, path])
        amounts = list(decode_result(["uint256[]"], await adapter.call(self.router, data, ttl_class="block"))[0])
        return amounts[-1], amounts

    async def _pair(self, adapter: EVMChainAdapter, token_a: str, token_b: str) -> str:
        data = encode_call("getPair(address,address)", ["address", "address"], [token_a, token_b])
        pair = decode_result(["address"], await adapter.call(self.factory, data, ttl_class="static"))[0]
        if int(pair, 16) == 0:
            msg = f"No pair for {token_a}/{token_b}"
            raise VenueError(msg, self.name)
        return to_checksum_address(pair)

    async def _reserves(self, adapter: EVMChainAdapter, pair: str, token_in: str) -> tuple[int, int]:
        raw_reserves, raw_token0 = await asyncio.gather(
            adapter.call(pair, encode_call("getReserves()"), ttl_class="block"),
            adapter.call(pair, encode_call("token0()"), ttl_class="static"),
        )
        reserve0, reserve1, _ = decode_result(["uint112", "uint112", "uint32"], raw_reserves)
        token0 = decode_result(["address"], raw_token0)[0]
        if token0.lower() == token_in.lower():
            return reserve0, reserve1
        return reserve1, reserve0

    async def _hops(self, adapter: EVMChainAdapter, path: list[str]) -> tuple[list[RouteHop], Decimal]:
        """Route hops and the product of spot rates along the path."""
        pairs = await asyncio.gather(*(self._pair(adapter, a, b) for a, b in zip(path, path[1:], strict=False)))
        reserves = await asyncio.gather(
            *(self._reserves(adapter, pair, a) for pair, a in zip(pairs, path, strict=False))
        )
        spot = Decimal(1)
        hops = []
        fee_bps = self.fee * Decimal(10_000)
        for pair, (reserve_in, reserve_out), a, b in zip(pairs, reserves, path, path[1:], strict=False):
            if reserve_in == 0 or reserve_out == 0:
                msg = f"Pair {pair} has no reserves"
                raise VenueError(msg, self.name)
            spot *= Decimal(reserve_out) / Decimal(reserve_in)
            hops.append(RouteHop(venue=self.name, pool=pair, token_in=a, token_out=b, fee_bps=fee_bps))
        return hops, spot

    async def quote(self, request: SwapQuoteRequest) -> Quote:
        chain = request.chain
        adapter = self._evm(chain)
        info_in, info_out = await asyncio.gather(
            adapter.get_token_info(self.onchain_token(chain, request.token_in)),
            adapter.get_token_info(self.onchain_token(chain, request.token_out)),
        )
        amount_raw = to_base_units(request.amount, info_in.decimals)
        if amount_raw <= 0:
            msg = "Amount is below the token's smallest unit"
            raise VenueError(msg, self.name)

        paths = [
            [to_checksum_address(token) for token in path]
            for path in self.candidate_paths(chain, info_in.address, info_out.address)
        ]
        path, out_raw, _ = await self.best_of(paths, lambda p: self._amounts_out(adapter, p, amount_raw))
        hops, spot = await self._hops(adapter, path)

        ideal = Decimal(amount_raw) * spot * (1 - self.fee) ** len(hops)
        impact = max(Decimal(0), 1 - Decimal(out_raw) / ideal) * 100 if ideal > 0 else Decimal(0)

        gas_units = GAS_BASE + GAS_PER_HOP * len(hops)
        gas_native, gas_usd = await self.gas_costs(chain, gas_units)

        return Quote(
            venue=self.name,
            chain=chain,
            token_in=request.token_in,
            token_out=request.token_out,
            amount_in=request.amount,
            amount_out=from_base_units(out_raw, info_out.decimals),
            price_impact=min(impact, Decimal(100)),
            gas_units=gas_units,
            gas_cost_native=gas_native,
            gas_cost_usd=gas_usd,
            route=Route(hops=tuple(hops)),
            valid_until=self.valid_until(),
        )
