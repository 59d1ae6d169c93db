"""Pytest configuration and shared fixtures for chain-gateway tests."""

import asyncio
from collections.abc import Callable
from typing import Any

import httpx
import pytest

from chain_gateway.core.config import CacheSettings, ChainSettings, PoolSettings, ProviderSettings
from chain_gateway.core.errors import ProviderError
from chain_gateway.core.models import ChainFamily, LoadBalancingStrategy, Provider, ProviderTier
from chain_gateway.core.registry import ProviderRegistry
from chain_gateway.rpc.cache import ResponseCache
from chain_gateway.rpc.pool import ConnectionPool
from chain_gateway.rpc.transport import Transport

USDC = "0xA0b86991c6218b36c1d19D4a2e9Eb0cE3606eB48"
WETH = "0xC02aaA39b223FE8D0A0e5C4F27eAD9083C756Cc2"
VITALIK = "0xd8dA6BF26964aF9D7eEd9e03E53415D37aA96045"
SOL_OWNER = "9WzDXwBbmkg8ZTbNMqUxvQRAyrZzDsGYdLVL9zYtAWWM"
SOL_USDC = "EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v"


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeTransport(Transport):
    """
    In-memory transport.

    ``responder(provider, method, params)`` returns the result or raises a
    ``ProviderError``; every call is recorded in ``calls``.
    """

    def __init__(self, responder: Callable[[Provider, str, Any], Any], delay: float = 0.0) -> None:
        self.responder = responder
        self.delay = delay
        self.calls: list[tuple[str, str, Any]] = []
        self.closed = False

    async def call(self, provider: Provider, method: str, params: Any, timeout: float | None = None) -> Any:
        self.calls.append((provider.id, method, params))
        if self.delay:
            await asyncio.sleep(self.delay)
        return self.responder(provider, method, params)

    def count(self, method: str | None = None, provider_id: str | None = None) -> int:
        return sum(
            1
            for called_provider, called_method, _ in self.calls
            if (method is None or called_method == method) and (provider_id is None or called_provider == provider_id)
        )

    async def close(self) -> None:
        self.closed = True


def routing_responder(routes: dict[str, Any]) -> Callable[[Provider, str, Any], Any]:
    """Responder answering by method name; callables receive ``params``."""

    def respond(provider: Provider, method: str, params: Any) -> Any:
        if method not in routes:
            raise AssertionError(f"unexpected RPC call {method} {params}")
        value = routes[method]
        if isinstance(value, ProviderError):
            raise value
        return value(params) if callable(value) else value

    return respond


def make_provider(provider_id: str, chain: str = "ethereum", **kwargs: Any) -> Provider:
    return Provider(id=provider_id, chain=chain, url=f"https://{provider_id}.example", **kwargs)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def registry(clock: FakeClock) -> ProviderRegistry:
    return ProviderRegistry(clock=clock)


@pytest.fixture
def pool_settings() -> PoolSettings:
    return PoolSettings(
        request_timeout_s=1.0,
        max_retries=3,
        base_delay_s=0.0,
        max_delay_s=0.0,
        strategy=LoadBalancingStrategy.ROUND_ROBIN,
    )


@pytest.fixture
def evm_settings() -> ChainSettings:
    return ChainSettings(
        family=ChainFamily.EVM,
        chain_id=1,
        native_symbol="ETH",
        wrapped_native=WETH,
        price_id="coingecko:ethereum",
        block_time_s=12.0,
        gas_multiplier=1.2,
        providers=[ProviderSettings(id="node-a", url="https://node-a.example", tier=ProviderTier.PREMIUM)],
        tokens={"WETH": WETH, "USDC": USDC},
        intermediates=["WETH", "USDC"],
    )


@pytest.fixture
def solana_settings() -> ChainSettings:
    return ChainSettings(
        family=ChainFamily.SOLANA,
        chain_id=101,
        native_symbol="SOL",
        native_decimals=9,
        wrapped_native="So11111111111111111111111111111111111111112",
        price_id="coingecko:solana",
        block_time_s=0.4,
        providers=[ProviderSettings(id="sol-a", url="https://sol-a.example")],
        tokens={"USDC": SOL_USDC},
    )


def build_pool(
    registry: ProviderRegistry,
    chain: str,
    settings: ChainSettings,
    transport: FakeTransport,
    pool_settings: PoolSettings | None = None,
) -> ConnectionPool:
    for provider_settings in settings.providers:
        registry.register_settings(chain, provider_settings)
    return ConnectionPool(registry, transport=transport, settings=pool_settings or PoolSettings(max_retries=0))


@pytest.fixture
def cache() -> ResponseCache:
    return ResponseCache()


@pytest.fixture
def cache_settings() -> CacheSettings:
    return CacheSettings()


def mock_client(handler: Callable[[httpx.Request], httpx.Response]) -> httpx.AsyncClient:
    """AsyncClient whose requests are answered by ``handler``."""
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))
