"""DEX aggregator for fanning a quote request out across venue adapters."""

import asyncio
import logging
import time
from collections.abc import Iterable
from decimal import Decimal
from functools import cmp_to_key

from pydantic import BaseModel, ValidationError

from chain_gateway.core.config import AggregatorSettings, ChainSettings
from chain_gateway.core.errors import InvalidRequest
from chain_gateway.core.models import (
    NATIVE,
    AggregatedQuoteResult,
    NoLiquidity,
    NoLiquidityReason,
    Quote,
    ScoredQuote,
    SwapQuoteRequest,
    VenueFailure,
)
from chain_gateway.dex.base import BaseVenueAdapter
from chain_gateway.pricing.defillama import DeFiLlamaPricing

logger = logging.getLogger(__name__)

LATENCY_EMA_ALPHA = 0.2


class VenueStats(BaseModel):
    """Running counters for one venue."""

    attempts: int = 0
    successes: int = 0
    failures: int = 0
    timeouts: int = 0
    latency_ms: float | None = None

    def observe_latency(self, latency_ms: float) -> None:
        if self.latency_ms is None:
            self.latency_ms = latency_ms
        else:
            self.latency_ms = LATENCY_EMA_ALPHA * latency_ms + (1 - LATENCY_EMA_ALPHA) * self.latency_ms


def net_output(
    quote: Quote, price_out: Decimal, native_out: bool = False, native_in: bool = False
) -> tuple[Decimal, Decimal | None]:
    """
    Output amount after subtracting gas, expressed in the output token.

    Gas is converted to output token units, first match wins:

    1. the output token is the native asset (or its wrapped form): the
       native gas cost as is
    2. the output token has a USD price: ``gas_cost_usd / price_out``
    3. the input token is native: the native gas cost at the quote's own
       rate, ``gas_cost_native * amount_out / amount_in``

    Otherwise gas is left out and the gross output is returned.

    Parameters
    ----------
    quote : Quote
        Venue quote
    price_out : Decimal
        USD price of the output token, 0 when unknown
    native_out : bool
        Whether the output token is the native asset or its wrapped form
    native_in : bool
        Whether the input token is the native asset or its wrapped form

    Returns
    -------
    tuple[Decimal, Decimal | None]
        Net output, gas cost in output token units (None when unpriced)

    """
    if native_out:
        gas_in_output = quote.gas_cost_native
    elif quote.gas_cost_usd is not None and price_out > 0:
        gas_in_output = quote.gas_cost_usd / price_out
    elif native_in and quote.gas_cost_native > 0:
        gas_in_output = quote.gas_cost_native * quote.amount_out / quote.amount_in
    elif not has_gas_cost(quote):
        gas_in_output = Decimal(0)
    else:
        return quote.amount_out, None
    return quote.amount_out - gas_in_output, gas_in_output


def has_gas_cost(quote: Quote) -> bool:
    return quote.gas_cost_native > 0 or bool(quote.gas_cost_usd)


def _is_native(settings: ChainSettings, token: str) -> bool:
    if token == NATIVE:
        return True
    return settings.wrapped_native is not None and token.lower() == settings.wrapped_native.lower()


class DexAggregator:
    """
    Concurrent quote fan-out with a shared deadline and deterministic ranking.

    Parameters
    ----------
    venues : list[BaseVenueAdapter]
        Configured venue adapters
    chains : dict[str, ChainSettings]
        Chain settings by name
    prices : DeFiLlamaPricing
        USD price source for the output token
    settings : AggregatorSettings | None
        Deadline and ranking settings

    """

    def __init__(
        self,
        venues: list[BaseVenueAdapter],
        chains: dict[str, ChainSettings],
        prices: DeFiLlamaPricing,
        settings: AggregatorSettings | None = None,
    ) -> None:
        self.venues = venues
        self.chains = chains
        self.prices = prices
        self.settings = settings or AggregatorSettings()
        self._stats: dict[str, VenueStats] = {venue.name: VenueStats() for venue in venues}

    def venues_for(
        self,
        chain: str,
        include: Iterable[str] | None = None,
        exclude: Iterable[str] | None = None,
    ) -> list[BaseVenueAdapter]:
        """Venues supporting a chain, filtered by name."""
        included = set(include) if include is not None else None
        excluded = set(exclude or ())
        return [
            venue
            for venue in self.venues
            if venue.supports_chain(chain)
            and (included is None or venue.name in included)
            and venue.name not in excluded
        ]

    def stats(self) -> dict[str, VenueStats]:
        return {name: stats.model_copy() for name, stats in self._stats.items()}

    def _compare(self, a: ScoredQuote, b: ScoredQuote) -> int:
        diff = a.net_output - b.net_output
        if abs(diff) > self.settings.tie_epsilon:
            return -1 if diff > 0 else 1
        if a.quote.price_impact != b.quote.price_impact:
            return -1 if a.quote.price_impact < b.quote.price_impact else 1
        if a.latency_ms != b.latency_ms:
            return -1 if a.latency_ms < b.latency_ms else 1
        return 0

    def rank(self, quotes: list[ScoredQuote]) -> list[ScoredQuote]:
        """Order quotes best first: net output, then price impact, then latency."""
        return sorted(quotes, key=cmp_to_key(self._compare))

    async def _timed_quote(self, venue: BaseVenueAdapter, request: SwapQuoteRequest) -> tuple[Quote, float]:
        start = time.monotonic()
        quote = await venue.quote(request)
        return quote, (time.monotonic() - start) * 1000

    async def _await_price(self, price_task: asyncio.Task, timeout: float, chain: str, token: str) -> Decimal:
        """Collect the output token price, giving up after ``timeout``."""
        if not price_task.done():
            await asyncio.wait([price_task], timeout=max(timeout, 0.0))
        if not price_task.done():
            price_task.cancel()
            await asyncio.gather(price_task, return_exceptions=True)
            logger.warning("Price lookup for %s on %s timed out, gas left unpriced", token, chain)
            return Decimal(0)
        error = price_task.exception()
        if error is not None:
            logger.warning("Price lookup for %s on %s failed: %s", token, chain, error)
            return Decimal(0)
        return price_task.result()

    async def get_swap_quote(
        self,
        chain: str,
        token_in: str,
        token_out: str,
        amount: Decimal,
        max_slippage: Decimal = Decimal("1"),
        *,
        deadline_s: float | None = None,
        include: Iterable[str] | None = None,
        exclude: Iterable[str] | None = None,
    ) -> AggregatedQuoteResult:
        """
        Query every eligible venue concurrently and rank the answers.

        Venues still running at the deadline are cancelled and recorded as
        timed out. Venue errors are recorded, never raised. The output token
        price lookup runs alongside but is only waited on for
        ``price_timeout_s`` (bounded by what is left of the deadline) once the
        venues are done; quotes whose gas could not be converted are marked
        with ``gas_priced=False`` and rank by gross output.

        Parameters
        ----------
        chain : str
            Chain name
        token_in : str
            Input token address, symbol or ``"native"``
        token_out : str
            Output token address, symbol or ``"native"``
        amount : Decimal
            Input amount in token units
        max_slippage : Decimal
            Maximum acceptable price impact in percent
        deadline_s : float | None
            Fan-out deadline, the configured default when None
        include : Iterable[str] | None
            Only query these venue names
        exclude : Iterable[str] | None
            Skip these venue names

        Returns
        -------
        AggregatedQuoteResult
            Ranked quotes plus failure bookkeeping

        Raises
        ------
        InvalidRequest
            If the amount, slippage, chain or token pair is invalid

        """
        operation = "get_swap_quote"
        try:
            request = SwapQuoteRequest(
                chain=chain,
                token_in=token_in,
                token_out=token_out,
                amount=amount,
                max_slippage=max_slippage,
            )
        except ValidationError as e:
            msg = f"Invalid quote request: {e.errors()[0]['msg']}"
            raise InvalidRequest(msg, chain=chain, operation=operation) from e

        settings = self.chains.get(chain)
        if settings is None:
            msg = f"Unknown chain: {chain}"
            raise InvalidRequest(msg, chain=chain, operation=operation)
        resolved_in = settings.resolve_token(token_in)
        resolved_out = settings.resolve_token(token_out)
        if resolved_in.lower() == resolved_out.lower():
            msg = "token_in and token_out must differ"
            raise InvalidRequest(msg, chain=chain, operation=operation)
        request = request.model_copy(update={"token_in": resolved_in, "token_out": resolved_out})

        result = AggregatedQuoteResult(chain=chain, token_in=resolved_in, token_out=resolved_out, amount_in=amount)
        venues = self.venues_for(chain, include, exclude)
        if not venues:
            result.no_liquidity = NoLiquidity(
                reason=NoLiquidityReason.NO_VENUES,
                message=f"No venue serves {chain}",
            )
            return result

        started = time.monotonic()
        deadline = deadline_s if deadline_s is not None else self.settings.deadline_s
        native_out = _is_native(settings, resolved_out)
        native_in = _is_native(settings, resolved_in)
        tasks = {asyncio.create_task(self._timed_quote(venue, request)): venue for venue in venues}
        price_task = None
        if not native_out:
            price_task = asyncio.create_task(self.prices.get_token_price(chain, settings, resolved_out))
        result.attempted_venues = len(tasks)

        done, pending = await asyncio.wait(tasks, timeout=deadline)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

        price_out = Decimal(0)
        if price_task is not None:
            remaining = deadline - (time.monotonic() - started)
            price_timeout = min(self.settings.price_timeout_s, remaining)
            price_out = await self._await_price(price_task, price_timeout, chain, resolved_out)

        scored = []
        for task, venue in tasks.items():
            stats = self._stats.setdefault(venue.name, VenueStats())
            stats.attempts += 1
            if task not in done:
                stats.timeouts += 1
                result.failures.append(VenueFailure(venue=venue.name, timed_out=True, message="deadline exceeded"))
                logger.info("Venue %s timed out after %.2fs", venue.name, deadline)
                continue
            error = task.exception()
            if error is not None:
                stats.failures += 1
                result.failures.append(VenueFailure(venue=venue.name, message=str(error)))
                logger.info("Venue %s failed: %s", venue.name, error)
                continue
            quote, latency_ms = task.result()
            stats.successes += 1
            stats.observe_latency(latency_ms)
            net, gas_in_output = net_output(quote, price_out, native_out, native_in)
            scored.append(
                ScoredQuote(
                    quote=quote,
                    net_output=net,
                    gas_cost_in_output=gas_in_output,
                    gas_priced=gas_in_output is not None,
                    latency_ms=latency_ms,
                    within_slippage=quote.price_impact <= request.max_slippage,
                )
            )

        result.succeeded_venues = len(scored)
        result.quotes = self.rank(scored)
        result.ranked = [quote for quote in result.quotes if quote.within_slippage]
        result.best = result.ranked[0] if result.ranked else None
        result.elapsed_ms = (time.monotonic() - started) * 1000

        if result.best is None:
            if scored:
                reason = NoLiquidityReason.SLIPPAGE_EXCEEDED
                message = f"All {len(scored)} quotes exceed max slippage of {request.max_slippage}%"
            else:
                reason = NoLiquidityReason.ALL_VENUES_FAILED
                message = f"None of {len(tasks)} venues returned a quote"
            result.no_liquidity = NoLiquidity(reason=reason, message=message)
        return result
