"""
Example script comparing ETH -> USDC quotes with real RPC calls.

Public endpoints from the bundled defaults are enough; premium providers and
API-keyed venues join in when their credentials are set.

Optional environment variables:
1. ALCHEMY_API_KEY - premium Ethereum RPC provider
2. ONEINCH_API_KEY - enables the 1inch venue

Usage:
    python examples/quote_eth_usdc.py
"""

import asyncio
from decimal import Decimal

from chain_gateway import ChainGateway, load_config


async def main() -> None:
    """Print the gas price, then every venue's quote for 1 ETH."""
    config = load_config()
    config.health.enabled = False

    print("Chain gateway quote example")
    print("=" * 50)

    async with ChainGateway.from_config(config) as gateway:
        gas = await gateway.get_gas_price("ethereum")
        print(f"Gas price: {gas.gas_price / 10**9:.2f} gwei")
        print()

        result = await gateway.get_swap_quote("ethereum", "native", "USDC", Decimal("1"))
        print(f"{result.succeeded_venues}/{result.attempted_venues} venues answered in {result.elapsed_ms:.0f} ms")
        print()

        for rank, scored in enumerate(result.ranked, 1):
            quote = scored.quote
            print(f"{rank}. {quote.venue}")
            print(f"  Out: {quote.amount_out:.2f} USDC (net {scored.net_output:.2f})")
            print(f"  Impact: {quote.price_impact:.3f}%")
            print(f"  Route: {' -> '.join(hop.pool[:10] for hop in quote.route.hops)}")
            print()

        for failure in result.failures:
            print(f"{failure.venue}: {'timed out' if failure.timed_out else failure.message}")

        if result.no_liquidity is not None:
            print(f"No quote: {result.no_liquidity.message}")


if __name__ == "__main__":
    asyncio.run(main())
