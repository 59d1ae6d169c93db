"""Concentrated-liquidity (Uniswap V3) venue adapter."""

import asyncio
import logging
from decimal import Decimal

from eth_utils import to_checksum_address

from chain_gateway.chains.abi import decode_result, encode_call
from chain_gateway.chains.base import from_base_units, to_base_units
from chain_gateway.chains.evm import EVMChainAdapter
from chain_gateway.core.errors import GatewayError, VenueError
from chain_gateway.core.models import Quote, Route, RouteHop, SwapQuoteRequest
from chain_gateway.dex.base import BaseVenueAdapter
from chain_gateway.dex.registry import VenueRegistry

logger = logging.getLogger(__name__)

DEFAULT_FEE_TIERS = [100, 500, 3000, 10000]
GAS_BASE = 50_000
Q192 = Decimal(2) ** 192

QUOTE_SINGLE = "quoteExactInputSingle((address,address,uint256,uint24,uint160))"


class _PoolQuote:
    __slots__ = ("amount_out", "fee", "gas_estimate", "pool", "token_in", "token_out")

    def __init__(self, token_in: str, token_out: str, pool: str, fee: int, amount_out: int, gas_estimate: int) -> None:
        self.token_in = token_in
        self.token_out = token_out
        self.pool = pool
        self.fee = fee
        self.amount_out = amount_out
        self.gas_estimate = gas_estimate


@VenueRegistry.register
class UniswapV3Venue(BaseVenueAdapter):
    """
    Quotes single hops with QuoterV2 over the fee tiers that have a live pool.

    Multi-hop routes are evaluated hop by hop, each hop on its best fee
    tier; price impact compares the output against the spot rates read from
    each pool's ``slot0``.
    """

    venue_type = "uniswap_v3"

    @property
    def fee_tiers(self) -> list[int]:
        return list(self.params.get("fee_tiers", DEFAULT_FEE_TIERS))

    def _evm(self, chain: str) -> EVMChainAdapter:
        adapter = self.adapter(chain)
        if not isinstance(adapter, EVMChainAdapter):
            msg = f"{self.name} needs an EVM chain, got {chain}"
            raise VenueError(msg, self.name)
        return adapter

    async def live_pools(self, adapter: EVMChainAdapter, token_a: str, token_b: str) -> dict[int, str]:
        """
        Discover pools that exist for a pair.

        Returns
        -------
        dict[int, str]
            Fee tier to pool address
        """
        calls = [
            adapter.call(
                self.params["factory"],
                encode_call("getPool(address,address,uint24)", ["address", "address", "uint24"], [token_a, token_b, fee]),
                ttl_class="static",
            )
            for fee in self.fee_tiers
        ]
        results = await asyncio.gather(*calls)
        pools = {}
        for fee, raw in zip(self.fee_tiers, results, strict=True):
            pool = decode_result(["address"], raw)[0]
            if int(pool, 16) != 0:
                pools[fee] = to_checksum_address(pool)
        return pools

    async def _quote_pool(self, adapter: EVMChainAdapter, token_in: str, token_out: str, fee: int, amount: int) -> tuple[int, int]:
        data = encode_call(
            QUOTE_SINGLE,
            ["(address,address,uint256,uint24,uint160)"],
            [(token_in, token_out, amount, fee, 0)],
        )
        amount_out, _, _, gas_estimate = decode_result(
            ["uint256", "uint160", "uint32", "uint256"],
            await adapter.call(self.params["quoter"], data, ttl_class="block"),
        )
        return amount_out, gas_estimate

    async def _best_hop(self, adapter: EVMChainAdapter, token_in: str, token_out: str, amount: int) -> _PoolQuote:
        pools = await self.live_pools(adapter, token_in, token_out)
        if not pools:
            msg = f"No pool for {token_in}/{token_out}"
            raise VenueError(msg, self.name)
        fees = list(pools)
        results = await asyncio.gather(
            *(self._quote_pool(adapter, token_in, token_out, fee, amount) for fee in fees),
            return_exceptions=True,
        )
        best: _PoolQuote | None = None
        for fee, result in zip(fees, results, strict=True):
            if isinstance(result, (GatewayError, ValueError)):
                logger.debug("%s: fee tier %d rejected: %s", self.name, fee, result)
                continue
            if isinstance(result, BaseException):
                raise result
            amount_out, gas_estimate = result
            if best is None or amount_out > best.amount_out:
                best = _PoolQuote(token_in, token_out, pools[fee], fee, amount_out, gas_estimate)
        if best is None or best.amount_out == 0:
            msg = f"No quotable pool for {token_in}/{token_out}"
            raise VenueError(msg, self.name)
        return best

    async def _evaluate_path(self, adapter: EVMChainAdapter, path: list[str], amount: int) -> tuple[int, list[_PoolQuote]]:
        hops = []
        for token_in, token_out in zip(path, path[1:], strict=False):
            hop = await self._best_hop(adapter, token_in, token_out, amount)
            hops.append(hop)
            amount = hop.amount_out
        return amount, hops

    async def _spot_rate(self, adapter: EVMChainAdapter, hop: _PoolQuote) -> Decimal:
        """Fee-adjusted spot rate of one hop in raw units."""
        raw = await adapter.call(hop.pool, encode_call("slot0()"), ttl_class="block")
        sqrt_price = decode_result(["uint160", "int24", "uint16", "uint16", "uint16", "uint8", "bool"], raw)[0]
        price = Decimal(sqrt_price) ** 2 / Q192
        if price == 0:
            msg = f"Pool {hop.pool} is uninitialized"
            raise VenueError(msg, self.name)
        zero_for_one = int(hop.token_in, 16) < int(hop.token_out, 16)
        rate = price if zero_for_one else 1 / price
        return rate * (1 - Decimal(hop.fee) / Decimal(1_000_000))

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
        _, out_raw, pool_quotes = await self.best_of(paths, lambda p: self._evaluate_path(adapter, p, amount_raw))

        rates = await asyncio.gather(*(self._spot_rate(adapter, hop) for hop in pool_quotes))
        ideal = Decimal(amount_raw)
        for rate in rates:
            ideal *= rate
        impact = max(Decimal(0), 1 - Decimal(out_raw) / ideal) * 100 if ideal > 0 else Decimal(0)

        gas_units = GAS_BASE + sum(hop.gas_estimate for hop in pool_quotes)
        gas_native, gas_usd = await self.gas_costs(chain, gas_units)
        hops = tuple(
            RouteHop(
                venue=self.name,
                pool=hop.pool,
                token_in=hop.token_in,
                token_out=hop.token_out,
                fee_bps=Decimal(hop.fee) / 100,
            )
            for hop in pool_quotes
        )

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
            route=Route(hops=hops),
            valid_until=self.valid_until(),
        )
