"""Tests for the connection pool and health monitor."""

import asyncio
import random
import time

import pytest

from chain_gateway.core.config import PoolSettings
from chain_gateway.core.errors import (
    AllProvidersUnavailable,
    ChainUnavailable,
    ErrorKind,
    InvalidRequest,
    NotFound,
    ProviderError,
)
from chain_gateway.core.models import ChainFamily, CircuitState, LoadBalancingStrategy
from chain_gateway.rpc.health import HealthMonitor
from chain_gateway.rpc.pool import ConnectionPool

from conftest import FakeTransport, make_provider


class ScriptedTransport(FakeTransport):
    """Transport answering through a coroutine and recording call times."""

    def __init__(self, respond) -> None:
        super().__init__(lambda provider, method, params: None)
        self.respond = respond
        self.times: list[float] = []

    async def call(self, provider, method, params, timeout=None):
        self.calls.append((provider.id, method, params))
        self.times.append(time.monotonic())
        return await self.respond(provider, method, params)


def raising(error: ProviderError):
    def respond(provider, method, params):
        raise error

    return respond


def _settings(**overrides) -> PoolSettings:
    values = {
        "request_timeout_s": 1.0,
        "max_retries": 3,
        "base_delay_s": 0.0,
        "max_delay_s": 0.0,
        "strategy": LoadBalancingStrategy.LEAST_IN_FLIGHT,
    }
    values.update(overrides)
    return PoolSettings(**values)


async def test_execute_returns_result_and_records_success(registry):
    """Test a successful call updates provider health."""
    registry.register(make_provider("node-a"))
    transport = FakeTransport(lambda provider, method, params: "0x10")
    pool = ConnectionPool(registry, transport=transport, settings=_settings())

    assert await pool.execute("ethereum", "eth_blockNumber") == "0x10"

    provider = registry.get("node-a")
    assert provider.total_requests == 1
    assert provider.success_rate == 1.0
    assert transport.calls == [("node-a", "eth_blockNumber", [])]


async def test_unknown_chain_is_invalid(registry):
    """Test that unknown chains are rejected before any call."""
    transport = FakeTransport(lambda provider, method, params: None)
    pool = ConnectionPool(registry, transport=transport, settings=_settings())

    with pytest.raises(InvalidRequest):
        await pool.execute("fantom", "eth_blockNumber")
    assert transport.calls == []


async def test_failover_to_another_provider(registry):
    """Test that a retriable failure moves to an untried provider."""
    registry.register(make_provider("broken"))
    registry.register(make_provider("healthy"))

    def respond(provider, method, params):
        if provider.id == "broken":
            raise ProviderError("502", ErrorKind.SERVER, provider_id=provider.id)
        return "ok"

    transport = FakeTransport(respond)
    pool = ConnectionPool(registry, transport=transport, settings=_settings())

    assert await pool.execute("ethereum", "eth_chainId") == "ok"
    assert [call[0] for call in transport.calls] == ["broken", "healthy"]
    assert registry.get("broken").consecutive_failures == 1
    assert registry.get("healthy").total_requests == 1
    assert pool.stats()["requests"] == len(transport.calls)


async def test_retries_exhausted_raises_all_providers_unavailable(registry):
    """Test bounded retries and error context."""
    registry.register(make_provider("node-a"))
    registry.register(make_provider("node-b"))
    transport = FakeTransport(raising(ProviderError("timeout", ErrorKind.TIMEOUT)))
    pool = ConnectionPool(registry, transport=transport, settings=_settings(max_retries=2))

    with pytest.raises(AllProvidersUnavailable) as excinfo:
        await pool.execute("ethereum", "eth_gasPrice")

    assert len(transport.calls) == 3
    assert excinfo.value.attempts == 3
    assert sorted(excinfo.value.providers_tried) == ["node-a", "node-b"]
    assert excinfo.value.chain == "ethereum"
    assert registry.get("node-a").consecutive_failures + registry.get("node-b").consecutive_failures == 3


async def test_non_retriable_error_surfaces_immediately(registry):
    """Test rejections are not retried and do not hurt provider health."""
    registry.register(make_provider("node-a"))
    registry.register(make_provider("node-b"))
    transport = FakeTransport(raising(ProviderError("execution reverted", ErrorKind.EXECUTION)))
    pool = ConnectionPool(registry, transport=transport, settings=_settings())

    with pytest.raises(InvalidRequest, match="execution reverted"):
        await pool.execute("ethereum", "eth_call")

    assert len(transport.calls) == 1
    tried = transport.calls[0][0]
    assert registry.get(tried).consecutive_failures == 0


async def test_not_found_surfaces_as_not_found(registry):
    """Test NOT_FOUND classification maps to NotFound."""
    registry.register(make_provider("sol", chain="solana"))
    transport = FakeTransport(raising(ProviderError("slot was skipped", ErrorKind.NOT_FOUND)))
    pool = ConnectionPool(registry, transport=transport, settings=_settings())

    with pytest.raises(NotFound):
        await pool.execute("solana", "getBlock", [1])


async def test_chain_unavailable_fails_fast(registry):
    """Test that a chain with every circuit open makes no network call."""
    registry.register(make_provider("node-a"))
    transport = FakeTransport(raising(ProviderError("down", ErrorKind.CONNECTION)))
    pool = ConnectionPool(registry, transport=transport, settings=_settings(max_retries=0))

    for _ in range(5):
        with pytest.raises(AllProvidersUnavailable):
            await pool.execute("ethereum", "eth_blockNumber")
    assert registry.get("node-a").circuit == CircuitState.OPEN
    calls_before = len(transport.calls)

    with pytest.raises(ChainUnavailable):
        await pool.execute("ethereum", "eth_blockNumber")
    assert len(transport.calls) == calls_before


async def test_half_open_probe_success_closes_circuit(registry, clock):
    """Test that one successful call through a half-open circuit closes it."""
    registry.register(make_provider("node-a"))
    for _ in range(5):
        registry.record_outcome("node-a", 10.0, False)
    clock.advance(30)
    transport = FakeTransport(lambda provider, method, params: "0x1")
    pool = ConnectionPool(registry, transport=transport, settings=_settings())

    assert await pool.execute("ethereum", "eth_blockNumber") == "0x1"
    assert registry.get("node-a").circuit == CircuitState.CLOSED


async def test_in_flight_success_does_not_close_open_circuit(registry):
    """Test a slow success landing after the circuit opened keeps it open."""
    registry.register(make_provider("node-a"))

    async def respond(provider, method, params):
        if params == ["slow"]:
            await asyncio.sleep(0.2)
            return "0x1"
        await asyncio.sleep(0.01)
        raise ProviderError("down", ErrorKind.CONNECTION, provider_id=provider.id)

    transport = ScriptedTransport(respond)
    pool = ConnectionPool(registry, transport=transport, settings=_settings(max_retries=0))

    slow = asyncio.create_task(pool.execute("ethereum", "eth_call", ["slow"]))
    await asyncio.sleep(0)
    failures = await asyncio.gather(
        *(pool.execute("ethereum", "eth_call", ["fast"]) for _ in range(5)), return_exceptions=True
    )
    assert all(isinstance(error, AllProvidersUnavailable) for error in failures)
    assert registry.get("node-a").circuit == CircuitState.OPEN

    assert await slow == "0x1"

    provider = registry.get("node-a")
    assert provider.circuit == CircuitState.OPEN
    assert provider.open_count == 1
    assert registry.list_healthy("ethereum") == []
    with pytest.raises(ChainUnavailable):
        await pool.execute("ethereum", "eth_call", ["after"])


async def test_rate_limit_holds_for_every_window_under_load(registry):
    """Test 1000 concurrent calls never exceed the provider's rate in any second."""
    rate = 500
    registry.register(make_provider("node-a", rate_limit_rps=rate, max_concurrency=1000))

    async def respond(provider, method, params):
        return "0x1"

    transport = ScriptedTransport(respond)
    pool = ConnectionPool(
        registry,
        transport=transport,
        settings=_settings(request_timeout_s=10.0, max_retries=0, max_total_connections=1000),
    )

    results = await asyncio.gather(*(pool.execute("ethereum", "eth_blockNumber") for _ in range(1000)))

    assert results == ["0x1"] * 1000
    times = sorted(transport.times)
    for i in range(len(times) - rate):
        assert times[i + rate] - times[i] >= 1.0 - 0.01
    assert times[-1] - times[0] >= 1.0 - 0.01


async def test_latency_biased_routes_to_fast_provider(registry):
    """Test a 50ms provider wins at least 90 of 100 consecutive calls against a 500ms one."""
    delays = {"fast": 0.005, "slow": 0.05}
    for provider_id, latency_ms in (("fast", 50.0), ("slow", 500.0)):
        registry.register(make_provider(provider_id, rate_limit_rps=1000))
        for _ in range(5):
            registry.record_outcome(provider_id, latency_ms, True)

    async def respond(provider, method, params):
        await asyncio.sleep(delays[provider.id])
        return "0x1"

    transport = ScriptedTransport(respond)
    pool = ConnectionPool(
        registry,
        transport=transport,
        settings=_settings(strategy=LoadBalancingStrategy.LATENCY_BIASED, max_retries=0),
        rng=random.Random(7),
    )

    for _ in range(100):
        await pool.execute("ethereum", "eth_blockNumber")

    assert transport.count(provider_id="fast") >= 90
    assert transport.count() == 100
    assert registry.get("fast").latency_ms < registry.get("slow").latency_ms


async def test_lease_timeout_is_not_a_provider_failure(registry):
    """Test that local back-pressure does not count against the provider."""
    registry.register(make_provider("node-a", max_concurrency=1))
    transport = FakeTransport(lambda provider, method, params: "ok")
    pool = ConnectionPool(registry, transport=transport, settings=_settings(request_timeout_s=0.05, max_retries=0))
    gate = pool.gate(registry.get("node-a"))

    async with gate.lease():
        with pytest.raises(AllProvidersUnavailable):
            await pool.execute("ethereum", "eth_blockNumber")

    assert transport.calls == []
    assert registry.get("node-a").consecutive_failures == 0


async def test_probe_records_outcome(registry):
    """Test synthetic probes go through the gate and are recorded."""
    registry.register(make_provider("node-a"))
    registry.register(make_provider("node-b"))

    def respond(provider, method, params):
        if provider.id == "node-b":
            raise ProviderError("503", ErrorKind.SERVER, provider_id=provider.id)
        return "0x1"

    transport = FakeTransport(respond)
    pool = ConnectionPool(registry, transport=transport, settings=_settings())

    assert await pool.probe(registry.get("node-a"), "eth_blockNumber") is True
    assert await pool.probe(registry.get("node-b"), "eth_blockNumber") is False
    assert registry.get("node-b").failed_requests == 1


async def test_health_monitor_probe_all(registry):
    """Test that the monitor probes every admitted provider with the family's method."""
    registry.register(make_provider("eth-node"))
    registry.register(make_provider("sol-node", chain="solana"))
    registry.register(make_provider("disabled-node"))
    registry.disable("disabled-node")
    transport = FakeTransport(lambda provider, method, params: 1)
    pool = ConnectionPool(registry, transport=transport, settings=_settings())
    monitor = HealthMonitor(registry, pool, families={"ethereum": ChainFamily.EVM, "solana": ChainFamily.SOLANA})

    outcome = await monitor.probe_all()

    assert outcome == {"eth-node": True, "sol-node": True}
    assert ("eth-node", "eth_blockNumber", []) in transport.calls
    assert ("sol-node", "getSlot", []) in transport.calls


async def test_health_monitor_start_stop(registry):
    """Test the background loop lifecycle."""
    registry.register(make_provider("node-a"))
    transport = FakeTransport(lambda provider, method, params: "0x1")
    pool = ConnectionPool(registry, transport=transport, settings=_settings())
    monitor = HealthMonitor(registry, pool, interval_s=0.01)

    monitor.start()
    assert monitor.running
    await asyncio.sleep(0.05)
    await monitor.stop()

    assert not monitor.running
    assert monitor.ticks >= 1
    assert transport.count("eth_blockNumber") >= 1


async def test_close_closes_transport(registry):
    """Test pool shutdown."""
    transport = FakeTransport(lambda provider, method, params: None)
    pool = ConnectionPool(registry, transport=transport)

    await pool.close()

    assert transport.closed
