"""Tests for the DEX quote aggregator."""

import asyncio
from decimal import Decimal

import pytest

from chain_gateway.core.config import AggregatorSettings, VenueSettings
from chain_gateway.core.errors import InvalidRequest, VenueError
from chain_gateway.core.models import NoLiquidityReason, Quote, SwapQuoteRequest
from chain_gateway.dex.aggregator import DexAggregator, VenueStats, net_output
from chain_gateway.dex.base import BaseVenueAdapter, VenueContext

from conftest import USDC, WETH


class FakePrices:
    def __init__(self, price: Decimal = Decimal("1"), delay: float = 0.0) -> None:
        self.price = price
        self.delay = delay
        self.lookups: list[str] = []

    async def get_token_price(self, chain, settings, token):
        self.lookups.append(token)
        await asyncio.sleep(self.delay)
        return self.price


class FakeVenue(BaseVenueAdapter):
    """Venue answering with a fixed output after a delay."""

    venue_type = "fake"

    def __init__(
        self, name, context, amount_out=None, impact="0.1", gas_usd=None, gas_native="0", delay=0.0, error=None
    ):
        super().__init__(VenueSettings(id=name, type=self.venue_type, chains=["ethereum"]), context)
        self.amount_out = amount_out
        self.impact = Decimal(impact)
        self.gas_usd = gas_usd
        self.gas_native = Decimal(gas_native)
        self.delay = delay
        self.error = error
        self.requests: list[SwapQuoteRequest] = []

    async def quote(self, request):
        self.requests.append(request)
        await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return Quote(
            venue=self.name,
            chain=request.chain,
            token_in=request.token_in,
            token_out=request.token_out,
            amount_in=request.amount,
            amount_out=Decimal(self.amount_out),
            price_impact=self.impact,
            gas_cost_native=self.gas_native,
            gas_cost_usd=None if self.gas_usd is None else Decimal(self.gas_usd),
        )


@pytest.fixture
def context(evm_settings):
    return VenueContext(adapters={}, chains={"ethereum": evm_settings}, prices=FakePrices())


@pytest.fixture
def make_aggregator(evm_settings, context):
    def factory(venues, price=Decimal("1"), prices=None, **settings):
        prices = prices or FakePrices(price)
        return DexAggregator(venues, {"ethereum": evm_settings}, prices, AggregatorSettings(**settings))

    return factory


async def test_best_quote_with_one_venue_timing_out(context, make_aggregator):
    """Test ranking and bookkeeping when one venue misses the deadline."""
    venues = [
        FakeVenue("alpha", context, amount_out="995"),
        FakeVenue("beta", context, amount_out="990"),
        FakeVenue("slow", context, amount_out="999", delay=5.0),
    ]
    aggregator = make_aggregator(venues)

    result = await aggregator.get_swap_quote("ethereum", "WETH", "USDC", Decimal("1"), deadline_s=0.2)

    assert result.attempted_venues == 3
    assert result.succeeded_venues == 2
    assert result.timed_out_venues == 1
    assert result.best.quote.venue == "alpha"
    assert [scored.quote.venue for scored in result.ranked] == ["alpha", "beta"]
    assert result.no_liquidity is None
    assert result.token_in == WETH
    assert result.token_out == USDC
    assert result.elapsed_ms < 2000


async def test_all_venues_fail(context, make_aggregator):
    """Test the no-liquidity indicator when nothing answers."""
    venues = [
        FakeVenue("broken", context, error=VenueError("no pool", "broken")),
        FakeVenue("slow", context, amount_out="1", delay=5.0),
    ]
    aggregator = make_aggregator(venues)

    result = await aggregator.get_swap_quote("ethereum", "WETH", "USDC", Decimal("1"), deadline_s=0.1)

    assert result.best is None
    assert result.ranked == []
    assert result.no_liquidity.reason == NoLiquidityReason.ALL_VENUES_FAILED
    assert result.failed_venues == 2
    assert {failure.venue: failure.timed_out for failure in result.failures} == {"broken": False, "slow": True}


async def test_gas_cost_changes_the_winner(context, make_aggregator):
    """Test net output subtracts gas priced in the output token."""
    venues = [
        FakeVenue("cheap-gas", context, amount_out="990", gas_usd="1"),
        FakeVenue("pricey-gas", context, amount_out="995", gas_usd="10"),
    ]
    aggregator = make_aggregator(venues)

    result = await aggregator.get_swap_quote("ethereum", "WETH", "USDC", Decimal("1"))

    assert result.best.quote.venue == "cheap-gas"
    assert result.best.net_output == Decimal("989")
    assert result.best.gas_cost_in_output == Decimal("1")


async def test_net_of_gas_picks_lower_gross_output(context, make_aggregator):
    """Test 1000 out with $5 gas beats 1010 out with $20 gas while a third venue times out."""
    venues = [
        FakeVenue("adapter-1", context, amount_out="1000", gas_usd="5"),
        FakeVenue("adapter-2", context, amount_out="1010", gas_usd="20"),
        FakeVenue("adapter-3", context, amount_out="1020", delay=5.0),
    ]
    aggregator = make_aggregator(venues)

    result = await aggregator.get_swap_quote("ethereum", "WETH", "USDC", Decimal("1"), deadline_s=0.2)

    assert result.best.quote.venue == "adapter-1"
    assert [(s.quote.venue, s.net_output) for s in result.ranked] == [
        ("adapter-1", Decimal("995")),
        ("adapter-2", Decimal("990")),
    ]
    assert result.attempted_venues == 3
    assert result.succeeded_venues == 2
    assert result.timed_out_venues == 1


async def test_all_venues_time_out(context, make_aggregator):
    """Test every venue missing the deadline."""
    venues = [FakeVenue(f"slow-{i}", context, amount_out="1", delay=5.0) for i in range(3)]
    aggregator = make_aggregator(venues)

    result = await aggregator.get_swap_quote("ethereum", "WETH", "USDC", Decimal("1"), deadline_s=0.1)

    assert result.best is None
    assert result.quotes == []
    assert result.attempted_venues == 3
    assert result.succeeded_venues == 0
    assert result.timed_out_venues == 3
    assert all(failure.timed_out for failure in result.failures)
    assert result.no_liquidity.reason == NoLiquidityReason.ALL_VENUES_FAILED
    assert result.elapsed_ms < 1000


async def test_slow_price_feed_does_not_hold_back_ranking(context, make_aggregator):
    """Test gas is still charged at the quote's rate when the price lookup stalls."""
    venues = [
        FakeVenue("a1", context, amount_out="1000", gas_usd="5", gas_native="0.005"),
        FakeVenue("a2", context, amount_out="1010", gas_usd="20", gas_native="0.02"),
    ]
    aggregator = make_aggregator(venues, prices=FakePrices(delay=5.0), price_timeout_s=0.05)

    result = await aggregator.get_swap_quote("ethereum", "WETH", "USDC", Decimal("1"), deadline_s=2.0)

    assert result.best.quote.venue == "a1"
    assert result.best.net_output == Decimal("995")
    assert result.ranked[1].net_output == Decimal("989.8")
    assert all(scored.gas_priced for scored in result.ranked)
    assert result.elapsed_ms < 1000


async def test_unpriced_gas_is_flagged(context, make_aggregator):
    """Test quotes ranked on gross output say so."""
    dai = "0x6B175474E89094C44Da98b954EedeAC495271d0F"
    venues = [FakeVenue("a1", context, amount_out="1000", gas_usd="5", gas_native="0.005")]
    aggregator = make_aggregator(venues, prices=FakePrices(delay=5.0), price_timeout_s=0.05)

    result = await aggregator.get_swap_quote("ethereum", "USDC", dai, Decimal("1000"), deadline_s=2.0)

    assert result.best.gas_priced is False
    assert result.best.gas_cost_in_output is None
    assert result.best.net_output == Decimal("1000")
    assert result.elapsed_ms < 1000


async def test_native_output_skips_price_lookup(context, make_aggregator):
    """Test native gas is subtracted directly when buying the wrapped native token."""
    prices = FakePrices(delay=5.0)
    venues = [
        FakeVenue("a1", context, amount_out="1.0", gas_native="0.001"),
        FakeVenue("a2", context, amount_out="1.0005", gas_native="0.002"),
    ]
    aggregator = make_aggregator(venues, prices=prices)

    result = await aggregator.get_swap_quote("ethereum", "USDC", "WETH", Decimal("2500"), deadline_s=2.0)

    assert result.best.quote.venue == "a1"
    assert result.best.net_output == Decimal("0.999")
    assert result.best.gas_cost_in_output == Decimal("0.001")
    assert prices.lookups == []
    assert result.elapsed_ms < 1000


async def test_tie_broken_by_price_impact(context, make_aggregator):
    """Test outputs within epsilon are ordered by lower price impact."""
    venues = [
        FakeVenue("higher-impact", context, amount_out="995", impact="0.5"),
        FakeVenue("lower-impact", context, amount_out="994.5", impact="0.2"),
    ]
    aggregator = make_aggregator(venues, tie_epsilon=Decimal("1"))

    result = await aggregator.get_swap_quote("ethereum", "WETH", "USDC", Decimal("1"))

    assert result.best.quote.venue == "lower-impact"


async def test_tie_broken_by_latency(context, make_aggregator):
    """Test identical quotes are ordered by venue latency."""
    venues = [
        FakeVenue("sluggish", context, amount_out="990", delay=0.05),
        FakeVenue("snappy", context, amount_out="990"),
    ]
    aggregator = make_aggregator(venues)

    result = await aggregator.get_swap_quote("ethereum", "WETH", "USDC", Decimal("1"))

    assert [scored.quote.venue for scored in result.ranked] == ["snappy", "sluggish"]


async def test_quotes_over_max_slippage_are_not_ranked(context, make_aggregator):
    """Test price impact above max slippage excludes a quote from ranking."""
    venues = [
        FakeVenue("deep", context, amount_out="990", impact="0.5"),
        FakeVenue("shallow", context, amount_out="995", impact="2"),
    ]
    aggregator = make_aggregator(venues)

    result = await aggregator.get_swap_quote("ethereum", "WETH", "USDC", Decimal("1"), max_slippage=Decimal("1"))

    assert [scored.quote.venue for scored in result.ranked] == ["deep"]
    assert len(result.quotes) == 2
    excluded = next(scored for scored in result.quotes if scored.quote.venue == "shallow")
    assert not excluded.within_slippage


async def test_every_quote_over_slippage(context, make_aggregator):
    """Test the slippage no-liquidity reason."""
    aggregator = make_aggregator([FakeVenue("shallow", context, amount_out="995", impact="3")])

    result = await aggregator.get_swap_quote("ethereum", "WETH", "USDC", Decimal("1"), max_slippage=Decimal("0.5"))

    assert result.best is None
    assert result.no_liquidity.reason == NoLiquidityReason.SLIPPAGE_EXCEEDED
    assert result.succeeded_venues == 1


async def test_no_venues(context, make_aggregator):
    """Test filtering every venue out."""
    aggregator = make_aggregator([FakeVenue("alpha", context, amount_out="1")])

    result = await aggregator.get_swap_quote("ethereum", "WETH", "USDC", Decimal("1"), exclude=["alpha"])

    assert result.no_liquidity.reason == NoLiquidityReason.NO_VENUES
    assert result.attempted_venues == 0


async def test_include_filter(context, make_aggregator):
    """Test restricting the fan-out to named venues."""
    alpha = FakeVenue("alpha", context, amount_out="1")
    beta = FakeVenue("beta", context, amount_out="2")
    aggregator = make_aggregator([alpha, beta])

    result = await aggregator.get_swap_quote("ethereum", "WETH", "USDC", Decimal("1"), include=["alpha"])

    assert result.attempted_venues == 1
    assert beta.requests == []
    assert alpha.requests[0].token_in == WETH


@pytest.mark.parametrize(
    ("chain", "token_in", "token_out", "amount", "slippage"),
    [
        ("ethereum", "WETH", "USDC", Decimal("0"), Decimal("1")),
        ("ethereum", "WETH", "USDC", Decimal("-1"), Decimal("1")),
        ("ethereum", "WETH", "USDC", Decimal("1"), Decimal("51")),
        ("ethereum", "WETH", WETH.lower(), Decimal("1"), Decimal("1")),
        ("fantom", "WETH", "USDC", Decimal("1"), Decimal("1")),
    ],
)
async def test_invalid_requests(context, make_aggregator, chain, token_in, token_out, amount, slippage):
    """Test request validation before any venue is called."""
    venue = FakeVenue("alpha", context, amount_out="1")
    aggregator = make_aggregator([venue])

    with pytest.raises(InvalidRequest):
        await aggregator.get_swap_quote(chain, token_in, token_out, amount, max_slippage=slippage)

    assert venue.requests == []


async def test_venue_stats(context, make_aggregator):
    """Test per-venue counters accumulate across requests."""
    venues = [
        FakeVenue("alpha", context, amount_out="1"),
        FakeVenue("broken", context, error=VenueError("boom")),
        FakeVenue("slow", context, amount_out="1", delay=5.0),
    ]
    aggregator = make_aggregator(venues)

    for _ in range(2):
        await aggregator.get_swap_quote("ethereum", "WETH", "USDC", Decimal("1"), deadline_s=0.1)

    stats = aggregator.stats()
    assert stats["alpha"].attempts == 2
    assert stats["alpha"].successes == 2
    assert stats["alpha"].latency_ms is not None
    assert stats["broken"].failures == 2
    assert stats["slow"].timeouts == 2


def test_latency_ema():
    """Test the first sample seeds the average."""
    stats = VenueStats()

    stats.observe_latency(100.0)
    stats.observe_latency(200.0)

    assert stats.latency_ms == pytest.approx(120.0)


def test_net_output_without_price():
    """Test gas is not subtracted when the output token is unpriced."""
    quote = Quote(
        venue="v",
        chain="ethereum",
        token_in=WETH,
        token_out=USDC,
        amount_in=Decimal("1"),
        amount_out=Decimal("10"),
        gas_cost_usd=Decimal("2"),
    )

    assert net_output(quote, Decimal("0")) == (Decimal("10"), None)
    assert net_output(quote, Decimal("2")) == (Decimal("9"), Decimal("1"))
