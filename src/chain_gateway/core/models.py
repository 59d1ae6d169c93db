"""Data models for providers, chain data, quotes, and aggregated quote results."""

import time
from collections import deque
from decimal import Decimal
from enum import StrEnum

from pydantic import BaseModel, ConfigDict, Field, PrivateAttr, computed_field


class ProviderTier(StrEnum):
    """Priority class of an RPC provider."""

    PREMIUM = "premium"
    STANDARD = "standard"
    FALLBACK = "fallback"


class CircuitState(StrEnum):
    """Circuit breaker state of a provider."""

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class LoadBalancingStrategy(StrEnum):
    """Provider selection strategy of the connection pool."""

    ROUND_ROBIN = "round_robin"
    LEAST_IN_FLIGHT = "least_in_flight"
    WEIGHTED = "weighted"
    LATENCY_BIASED = "latency_biased"


class ChainFamily(StrEnum):
    """Wire-protocol family of a chain."""

    EVM = "evm"
    SOLANA = "solana"


class Provider(BaseModel):
    """
    One RPC endpoint and its live health bookkeeping.

    Attributes
    ----------
    id : str
        Unique provider identifier
    chain : str
        Chain the endpoint serves
    tier : ProviderTier
        Priority class used in scoring
    url : str
        HTTP JSON-RPC endpoint
    api_key : str | None
        Optional credential sent as a bearer token
    rate_limit_rps : float
        Maximum admitted requests per second
    max_concurrency : int | None
        Per-provider in-flight cap, pool default when None
    cost_per_1k : float
        USD cost per 1000 requests
    latency_ms : float
        Rolling (EMA) latency
    success_rate : float
        Success ratio over the recent outcome window
    consecutive_failures : int
        Failures since the last success
    circuit : CircuitState
        Circuit breaker state
    accrued_cost : float
        Cost accrued in the current billing window
    enabled : bool
        Disabled providers are never selected
    score : float
        Last computed ranking score

    """

    id: str
    chain: str
    tier: ProviderTier = ProviderTier.STANDARD
    url: str
    api_key: str | None = Field(default=None, repr=False, exclude=True)
    rate_limit_rps: float = 25.0
    max_concurrency: int | None = None
    cost_per_1k: float = 0.0
    latency_ms: float = 100.0
    success_rate: float = 1.0
    consecutive_failures: int = 0
    circuit: CircuitState = CircuitState.CLOSED
    accrued_cost: float = 0.0
    enabled: bool = True
    score: float = 0.0
    open_count: int = 0
    opened_at: float | None = None
    total_requests: int = 0
    failed_requests: int = 0
    last_error: str | None = None

    _outcomes: deque = PrivateAttr(default_factory=lambda: deque(maxlen=100))
    _failure_times: deque = PrivateAttr(default_factory=deque)
    _probe_in_flight: bool = PrivateAttr(default=False)


class Token(BaseModel):
    """
    Token information.

    Attributes
    ----------
    address : str
        Token contract address or mint, ``"native"`` for the chain's native asset
    symbol : str
        Token symbol (e.g., 'ETH', 'USDC')
    decimals : int
        Number of decimal places
    name : str, optional
        Full token name

    """

    address: str
    symbol: str
    decimals: int
    name: str | None = None

    @property
    def is_native(self) -> bool:
        return self.address == NATIVE


NATIVE = "native"


class Balance(BaseModel):
    """Balance of one address in one token."""

    chain: str
    address: str
    token: Token
    raw: int
    amount: Decimal


class GasPrice(BaseModel):
    """
    Current fee level of a chain.

    Attributes
    ----------
    gas_price : int
        Price per gas unit in the smallest native unit (wei, or micro-lamports
        per compute unit on Solana)
    base_fee : int | None
        EIP-1559 base fee or Solana per-signature fee
    priority_fee : int | None
        Suggested priority fee

    """

    chain: str
    gas_price: int
    base_fee: int | None = None
    priority_fee: int | None = None


class TransactionRequest(BaseModel):
    """Unsigned transaction skeleton used for gas estimation."""

    from_address: str | None = None
    to: str | None = None
    value: int = 0
    data: str | None = None
    serialized: str | None = None


class Block(BaseModel):
    """Chain-agnostic block header."""

    chain: str
    number: int
    hash: str
    parent_hash: str | None = None
    timestamp: int = 0
    transactions: list[str] = Field(default_factory=list)
    base_fee_per_gas: int | None = None
    gas_used: int | None = None
    gas_limit: int | None = None


class Transaction(BaseModel):
    """Transaction with receipt data when it has been included."""

    chain: str
    hash: str
    block_number: int | None = None
    block_hash: str | None = None
    from_address: str | None = None
    to_address: str | None = None
    value: int = 0
    gas_used: int | None = None
    success: bool | None = None
    confirmations: int = 0


class TxStatus(StrEnum):
    """State of a transaction being awaited."""

    PENDING = "pending"
    CONFIRMED = "confirmed"
    FAILED = "failed"
    TIMED_OUT = "timed_out"


class TransactionOutcome(BaseModel):
    """Terminal result of ``wait_for_transaction``."""

    chain: str
    hash: str
    status: TxStatus
    confirmations: int = 0
    transaction: Transaction | None = None
    elapsed_s: float = 0.0


class PendingTransaction(BaseModel):
    """A transaction observed in the mempool."""

    chain: str
    hash: str
    seen_at: float = Field(default_factory=time.time)


class ChainState(BaseModel):
    """Cached per-chain snapshot."""

    chain: str
    latest_block: int
    base_gas_price: int
    healthy: bool = True
    updated_at: float = Field(default_factory=time.monotonic)


class RouteHop(BaseModel):
    """
    One on-chain hop of a swap route.

    Attributes
    ----------
    venue : str
        Venue executing the hop
    pool : str
        Pool or pair identifier
    token_in : str
        Input token address
    token_out : str
        Output token address
    fee_bps : Decimal
        Pool fee in basis points

    """

    model_config = ConfigDict(frozen=True)

    venue: str
    pool: str
    token_in: str
    token_out: str
    fee_bps: Decimal = Decimal("0")


class Route(BaseModel):
    """Ordered hops realizing a swap."""

    model_config = ConfigDict(frozen=True)

    hops: tuple[RouteHop, ...] = ()

    @property
    def path(self) -> list[str]:
        if not self.hops:
            return []
        return [self.hops[0].token_in, *(hop.token_out for hop in self.hops)]

    @property
    def hop_count(self) -> int:
        return len(self.hops)


class SwapQuoteRequest(BaseModel):
    """
    A request for a swap quote.

    Attributes
    ----------
    chain : str
        Chain name
    token_in : str
        Input token address or ``"native"``
    token_out : str
        Output token address or ``"native"``
    amount : Decimal
        Input amount in token units
    max_slippage : Decimal
        Maximum acceptable price impact in percent

    """

    model_config = ConfigDict(frozen=True)

    chain: str
    token_in: str
    token_out: str
    amount: Decimal = Field(gt=0)
    max_slippage: Decimal = Field(default=Decimal("1"), ge=0, le=50)


class Quote(BaseModel):
    """
    One venue's priced offer. Immutable once produced.

    Attributes
    ----------
    venue : str
        Venue identifier
    chain : str
        Chain name
    token_in : str
        Input token address
    token_out : str
        Output token address
    amount_in : Decimal
        Input amount in token units
    amount_out : Decimal
        Expected output amount in token units
    price_impact : Decimal
        Price impact in percent, within [0, 100]
    gas_units : int
        Estimated gas (or compute units)
    gas_cost_native : Decimal
        Gas cost in native token units
    gas_cost_usd : Decimal | None
        Gas cost in USD when a native price was available
    route : Route
        Hops realizing the swap
    valid_until : float
        Unix timestamp after which the quote must not be used

    """

    model_config = ConfigDict(frozen=True)

    venue: str
    chain: str
    token_in: str
    token_out: str
    amount_in: Decimal = Field(gt=0)
    amount_out: Decimal = Field(ge=0)
    price_impact: Decimal = Field(default=Decimal("0"), ge=0, le=100)
    gas_units: int = Field(default=0, ge=0)
    gas_cost_native: Decimal = Field(default=Decimal("0"), ge=0)
    gas_cost_usd: Decimal | None = Field(default=None, ge=0)
    route: Route = Field(default_factory=Route)
    valid_until: float = Field(default_factory=lambda: time.time() + 30)

    @computed_field
    @property
    def price(self) -> Decimal:
        return self.amount_out / self.amount_in

    def is_expired(self, now: float | None = None) -> bool:
        return (now if now is not None else time.time()) >= self.valid_until


class ScoredQuote(BaseModel):
    """A quote with the aggregator's ranking data attached."""

    quote: Quote
    net_output: Decimal
    gas_cost_in_output: Decimal | None = None
    gas_priced: bool = True
    latency_ms: float = 0.0
    within_slippage: bool = True


class NoLiquidityReason(StrEnum):
    """Why an aggregation produced no ranked quote."""

    NO_VENUES = "no_venues"
    ALL_VENUES_FAILED = "all_venues_failed"
    SLIPPAGE_EXCEEDED = "slippage_exceeded"


class NoLiquidity(BaseModel):
    """Structured "no result" indicator."""

    reason: NoLiquidityReason
    message: str


class VenueFailure(BaseModel):
    """One venue that failed or timed out during fan-out."""

    venue: str
    timed_out: bool = False
    message: str = ""


class AggregatedQuoteResult(BaseModel):
    """
    Outcome of one fan-out across venue adapters.

    Attributes
    ----------
    best : ScoredQuote | None
        Highest ranked quote
    ranked : list[ScoredQuote]
        Quotes within slippage, best first
    quotes : list[ScoredQuote]
        Every quote received before the deadline, including slippage exclusions
    failures : list[VenueFailure]
        Venues that errored or timed out
    attempted_venues : int
        Venues the request was sent to
    succeeded_venues : int
        Venues that returned a quote
    no_liquidity : NoLiquidity | None
        Set when ``ranked`` is empty

    """

    chain: str
    token_in: str
    token_out: str
    amount_in: Decimal
    best: ScoredQuote | None = None
    ranked: list[ScoredQuote] = Field(default_factory=list)
    quotes: list[ScoredQuote] = Field(default_factory=list)
    failures: list[VenueFailure] = Field(default_factory=list)
    attempted_venues: int = 0
    succeeded_venues: int = 0
    no_liquidity: NoLiquidity | None = None
    elapsed_ms: float = 0.0

    @property
    def failed_venues(self) -> int:
        return len(self.failures)

    @property
    def timed_out_venues(self) -> int:
        return sum(1 for failure in self.failures if failure.timed_out)
