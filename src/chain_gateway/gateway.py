"""Gateway facade wiring providers, chain adapters and venues together."""

import asyncio
import contextlib
import inspect
import logging
from collections.abc import Awaitable, Callable, Iterable
from decimal import Decimal
from typing import Any, TypeVar

import httpx

from chain_gateway.chains import ADAPTERS, BaseChainAdapter, Subscription
from chain_gateway.core.config import GatewayConfig, load_config
from chain_gateway.core.errors import InvalidRequest
from chain_gateway.core.models import (
    AggregatedQuoteResult,
    Balance,
    Block,
    GasPrice,
    PendingTransaction,
    Transaction,
    TransactionOutcome,
    TransactionRequest,
)
from chain_gateway.core.registry import ProviderRegistry
from chain_gateway.dex import DexAggregator, VenueContext, build_venues
from chain_gateway.pricing import DeFiLlamaPricing
from chain_gateway.rpc import ConnectionPool, HealthMonitor, ResponseCache, Transport

logger = logging.getLogger(__name__)

T = TypeVar("T")
Handler = Callable[[T], Awaitable[None] | None]


class ChainGateway:
    """
    Single entry point for multi-chain reads, writes and swap quotes.

    Parameters
    ----------
    config : GatewayConfig
        Validated configuration
    registry : ProviderRegistry
        Provider health and scores
    pool : ConnectionPool
        RPC connection pool
    cache : ResponseCache
        Shared response cache
    adapters : dict[str, BaseChainAdapter]
        Chain adapters by chain name
    prices : DeFiLlamaPricing
        USD price source
    aggregator : DexAggregator
        Swap quote aggregator
    monitor : HealthMonitor | None
        Background health monitor, not run when None
    http_client : httpx.AsyncClient | None
        REST client owned by the gateway

    Examples
    --------
    >>> async with ChainGateway.from_config(load_config()) as gateway:
    ...     balance = await gateway.get_balance("ethereum", "0xd8dA6BF26964aF9D7eEd9e03E53415D37aA96045")

    """

    def __init__(
        self,
        config: GatewayConfig,
        registry: ProviderRegistry,
        pool: ConnectionPool,
        cache: ResponseCache,
        adapters: dict[str, BaseChainAdapter],
        prices: DeFiLlamaPricing,
        aggregator: DexAggregator,
        monitor: HealthMonitor | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self.config = config
        self.registry = registry
        self.pool = pool
        self.cache = cache
        self.adapters = adapters
        self.prices = prices
        self.aggregator = aggregator
        self.monitor = monitor
        self._http_client = http_client
        self._listeners: list[tuple[Subscription, asyncio.Task]] = []

    @classmethod
    def from_config(
        cls,
        config: GatewayConfig | None = None,
        *,
        transport: Transport | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> "ChainGateway":
        """
        Build a gateway and all of its components from configuration.

        Parameters
        ----------
        config : GatewayConfig | None
            Configuration, ``load_config()`` when None
        transport : Transport | None
            RPC transport override
        http_client : httpx.AsyncClient | None
            Client for REST venues and pricing

        Returns
        -------
        ChainGateway
            Ready (not yet started) gateway

        """
        config = config or load_config()
        registry = ProviderRegistry(
            circuit=config.circuit,
            weights=config.scoring,
            budget_usd=config.health.budget_usd,
            billing_window_s=config.health.billing_window_s,
        )
        for chain, chain_settings in config.chains.items():
            for provider_settings in chain_settings.providers:
                registry.register_settings(chain, provider_settings)
            if not chain_settings.providers:
                logger.warning("Chain %s has no usable providers", chain)

        pool = ConnectionPool(registry, transport=transport, settings=config.pool)
        cache = ResponseCache(max_entries=config.cache.max_entries)
        adapters = {
            chain: ADAPTERS[chain_settings.family](chain, chain_settings, pool, cache, config.cache)
            for chain, chain_settings in config.chains.items()
        }

        owned_client = http_client is None
        client = http_client or httpx.AsyncClient(timeout=config.pricing.timeout_s)
        prices = DeFiLlamaPricing(
            config.pricing.base_url,
            client=client,
            cache=cache,
            ttl=config.cache.ttl.get("price", 30.0),
            timeout=config.pricing.timeout_s,
        )
        context = VenueContext(adapters, dict(config.chains), prices, client=client, quote_ttl_s=config.aggregator.quote_ttl_s)
        venues = build_venues(config.venues, context)
        logger.info("Configured %d chains and %d venues", len(adapters), len(venues))
        aggregator = DexAggregator(venues, dict(config.chains), prices, config.aggregator)

        monitor = None
        if config.health.enabled:
            families = {chain: chain_settings.family for chain, chain_settings in config.chains.items()}
            monitor = HealthMonitor(registry, pool, families=families, interval_s=config.health.interval_s)

        return cls(
            config,
            registry,
            pool,
            cache,
            adapters,
            prices,
            aggregator,
            monitor=monitor,
            http_client=client if owned_client else None,
        )

    # -- lifecycle -------------------------------------------------------

    async def start(self) -> None:
        if self.monitor is not None:
            self.monitor.start()

    async def close(self) -> None:
        """Stop background tasks and release network clients."""
        for subscription, task in self._listeners:
            await subscription.close()
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._listeners.clear()
        if self.monitor is not None:
            await self.monitor.stop()
        await self.pool.close()
        if self._http_client is not None:
            await self._http_client.aclose()

    async def __aenter__(self) -> "ChainGateway":
        await self.start()
        return self

    async def __aexit__(self, exc_type: type, exc_val: Exception, exc_tb: object) -> None:
        await self.close()

    # -- chain operations --------------------------------------------------

    def adapter(self, chain: str, operation: str = "") -> BaseChainAdapter:
        """
        Get the adapter for a chain.

        Raises
        ------
        InvalidRequest
            If the chain is not configured

        """
        try:
            return self.adapters[chain]
        except KeyError as e:
            msg = f"Unknown chain: {chain}"
            raise InvalidRequest(msg, chain=chain, operation=operation) from e

    def chains(self) -> list[str]:
        return list(self.adapters)

    async def get_balance(self, chain: str, address: str, token: str | None = None) -> Balance:
        return await self.adapter(chain, "get_balance").get_balance(address, token)

    async def estimate_gas(self, chain: str, tx: TransactionRequest) -> int:
        return await self.adapter(chain, "estimate_gas").estimate_gas(tx)

    async def get_gas_price(self, chain: str) -> GasPrice:
        return await self.adapter(chain, "get_gas_price").get_gas_price()

    async def send_transaction(self, chain: str, signed_tx: str) -> str:
        return await self.adapter(chain, "send_transaction").send_transaction(signed_tx)

    async def get_transaction(self, chain: str, tx_hash: str) -> Transaction:
        return await self.adapter(chain, "get_transaction").get_transaction(tx_hash)

    async def wait_for_transaction(
        self,
        chain: str,
        tx_hash: str,
        confirmations: int = 1,
        timeout: float = 120.0,
    ) -> TransactionOutcome:
        adapter = self.adapter(chain, "wait_for_transaction")
        return await adapter.wait_for_transaction(tx_hash, confirmations=confirmations, timeout=timeout)

    async def get_latest_block(self, chain: str) -> Block:
        return await self.adapter(chain, "get_latest_block").get_latest_block()

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
        return await self.aggregator.get_swap_quote(
            chain,
            token_in,
            token_out,
            amount,
            max_slippage,
            deadline_s=deadline_s,
            include=include,
            exclude=exclude,
        )

    # -- subscriptions -------------------------------------------------------

    def _listen(self, subscription: Subscription[T], handler: Handler) -> Subscription[T]:
        async def dispatch() -> None:
            async for item in subscription:
                try:
                    result = handler(item)
                    if inspect.isawaitable(result):
                        await result
                except Exception:
                    logger.exception("Handler for %s raised", subscription.name)

        task = asyncio.create_task(dispatch(), name=f"{subscription.name}-dispatch")
        self._listeners.append((subscription, task))
        return subscription

    def on_new_block(self, chain: str, handler: Handler[Block], poll_interval: float | None = None) -> Subscription[Block]:
        """
        Call ``handler`` for every new block of a chain.

        Returns
        -------
        Subscription[Block]
            Handle whose ``close()`` stops delivery

        """
        subscription = self.adapter(chain, "on_new_block").subscribe_blocks(poll_interval)
        return self._listen(subscription, handler)

    def on_pending_transaction(
        self,
        chain: str,
        handler: Handler[PendingTransaction],
        poll_interval: float | None = None,
    ) -> Subscription[PendingTransaction]:
        """
        Call ``handler`` for every pending transaction seen in the mempool.

        Raises
        ------
        InvalidRequest
            If the chain has no public mempool

        """
        subscription = self.adapter(chain, "on_pending_transaction").subscribe_mempool(poll_interval)
        return self._listen(subscription, handler)

    # -- observability -------------------------------------------------------

    def snapshot(self) -> dict[str, Any]:
        """Provider health, pool and cache counters and venue statistics."""
        return {
            "providers": self.registry.snapshot(),
            "pool": self.pool.stats(),
            "cache": self.cache.stats(),
            "venues": {name: stats.model_dump() for name, stats in self.aggregator.stats().items()},
            "health_monitor": {
                "running": self.monitor is not None and self.monitor.running,
                "ticks": self.monitor.ticks if self.monitor is not None else 0,
            },
        }
