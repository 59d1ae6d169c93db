"""Connection pool: provider selection, gating, retries and failover."""

import asyncio
import logging
import random
import time
from typing import Any

from chain_gateway.core.config import PoolSettings
from chain_gateway.core.errors import (
    AllProvidersUnavailable,
    ChainUnavailable,
    ErrorKind,
    InvalidRequest,
    ProviderError,
    translate_provider_error,
)
from chain_gateway.core.models import CircuitState, Provider
from chain_gateway.core.registry import ProviderRegistry
from chain_gateway.rpc.ratelimit import ProviderGate
from chain_gateway.rpc.retry import RetryConfig, RetryTracker
from chain_gateway.rpc.strategies import SelectionStrategy, get_strategy
from chain_gateway.rpc.transport import JsonRpcTransport, Transport

logger = logging.getLogger(__name__)


class ConnectionPool:
    """
    Executes RPC calls against the healthiest providers of a chain.

    Every call passes through the provider's gate (concurrency cap plus rate
    limiter) and a pool-wide connection cap. Retriable failures are retried
    with exponential backoff on providers not yet tried; every outcome is
    recorded in the registry before ``execute`` returns or raises.

    Parameters
    ----------
    registry : ProviderRegistry
        Provider health and scores
    transport : Transport | None
        Wire transport, JSON-RPC over HTTP when None
    settings : PoolSettings | None
        Limits, timeouts, retry policy and strategy
    strategy : SelectionStrategy | None
        Overrides the configured strategy
    rng : random.Random | None
        Random source for randomized strategies

    """

    def __init__(
        self,
        registry: ProviderRegistry,
        transport: Transport | None = None,
        settings: PoolSettings | None = None,
        strategy: SelectionStrategy | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self.registry = registry
        self.settings = settings or PoolSettings()
        self.transport = transport or JsonRpcTransport(timeout=self.settings.request_timeout_s)
        self.strategy = strategy or get_strategy(self.settings.strategy, rng)
        self.retry = RetryConfig.from_settings(self.settings)
        self._gates: dict[str, ProviderGate] = {}
        self._total = asyncio.Semaphore(self.settings.max_total_connections)
        self._requests = 0
        self._failures = 0
        self._retries = 0

    def gate(self, provider: Provider) -> ProviderGate:
        """Get (creating on first use) the gate guarding a provider."""
        gate = self._gates.get(provider.id)
        if gate is None:
            concurrency = provider.max_concurrency or self.settings.max_connections_per_provider
            gate = ProviderGate(concurrency, provider.rate_limit_rps)
            self._gates[provider.id] = gate
        return gate

    @property
    def in_flight(self) -> dict[str, int]:
        return {provider_id: gate.in_flight for provider_id, gate in self._gates.items()}

    async def _send(self, provider: Provider, method: str, params: Any, timeout: float) -> tuple[Any, float]:
        async with asyncio.timeout(timeout):
            await self._total.acquire()
        try:
            async with self.gate(provider).lease(timeout):
                started = time.perf_counter()
                try:
                    result = await self.transport.call(provider, method, params, timeout)
                except ProviderError as e:
                    e.latency_ms = (time.perf_counter() - started) * 1000
                    raise
                return result, (time.perf_counter() - started) * 1000
        finally:
            self._total.release()

    async def execute(self, chain: str, method: str, params: Any = None, *, timeout: float | None = None) -> Any:
        """
        Execute one RPC call with failover.

        Parameters
        ----------
        chain : str
            Chain name
        method : str
            RPC method name
        params : Any
            Method parameters
        timeout : float | None
            Per-attempt timeout, pool default when None

        Returns
        -------
        Any
            Decoded ``result`` of the call

        Raises
        ------
        InvalidRequest
            If the chain is unknown or a provider rejected the request
        ChainUnavailable
            If every provider of the chain is excluded (no call is made)
        AllProvidersUnavailable
            If retries and candidate providers are exhausted
        GatewayError
            For other non-retriable provider failures

        """
        params = [] if params is None else params
        timeout = timeout or self.settings.request_timeout_s
        if not self.registry.has_chain(chain):
            msg = f"Unknown chain: {chain}"
            raise InvalidRequest(msg, chain=chain, operation=method)

        tracker = RetryTracker(self.retry)
        tried: list[str] = []
        last_error: ProviderError | None = None

        while True:
            healthy = self.registry.list_healthy(chain)
            if not healthy:
                if not tried:
                    msg = f"No healthy provider for {chain}"
                    raise ChainUnavailable(msg, chain=chain, operation=method)
                break

            untried = [p for p in healthy if p.id not in tried]
            provider = self.strategy.select(untried or healthy, self.in_flight)
            probing = provider.circuit == CircuitState.HALF_OPEN
            if not self.registry.begin_call(provider.id):
                # probe slot raced away, pick again
                continue

            tracker.start_attempt()
            if provider.id not in tried:
                tried.append(provider.id)
            self._requests += 1

            try:
                result, latency_ms = await self._send(provider, method, params, timeout)
            except TimeoutError:
                # waiting for a slot is local back-pressure, not a provider failure
                last_error = ProviderError(
                    f"Timed out waiting for a connection to {provider.id}",
                    ErrorKind.RATE_LIMITED,
                    provider_id=provider.id,
                )
                logger.debug("Lease timeout on %s for %s", provider.id, method)
            except ProviderError as e:
                latency_ms = e.latency_ms or timeout * 1000
                if not e.retriable:
                    # rejections count as answered requests
                    self.registry.record_outcome(provider.id, latency_ms, True)
                    tracker.fail()
                    raise translate_provider_error(
                        e, chain=chain, operation=method, providers_tried=tried, attempts=tracker.attempts
                    ) from e
                last_error = e
                self._failures += 1
                self.registry.record_outcome(provider.id, latency_ms, False, error_kind=e.kind)
                logger.debug("Provider %s failed %s: %s", provider.id, method, e)
            else:
                self.registry.record_outcome(provider.id, latency_ms, True)
                tracker.succeed()
                return result
            finally:
                if probing:
                    self.registry.release_call(provider.id)

            delay = tracker.schedule_retry()
            if delay is None:
                break
            self._retries += 1
            await asyncio.sleep(delay)

        tracker.fail()
        msg = f"All providers failed for {chain} {method}"
        if last_error is not None:
            msg = f"{msg}: {last_error}"
        logger.warning("%s (tried %s)", msg, ", ".join(tried))
        raise AllProvidersUnavailable(
            msg, chain=chain, operation=method, providers_tried=tried, attempts=tracker.attempts
        ) from last_error

    async def probe(self, provider: Provider, method: str, params: Any = None) -> bool:
        """
        Send one synthetic request to a specific provider.

        Respects the provider's gate and records the outcome like real
        traffic.

        Returns
        -------
        bool
            True if the provider answered successfully

        """
        if not self.registry.begin_call(provider.id):
            return False
        probing = provider.circuit == CircuitState.HALF_OPEN
        timeout = self.settings.request_timeout_s
        try:
            _, latency_ms = await self._send(provider, method, [] if params is None else params, timeout)
        except TimeoutError:
            return False
        except ProviderError as e:
            self.registry.record_outcome(provider.id, e.latency_ms or timeout * 1000, False, error_kind=e.kind)
            logger.debug("Probe of %s failed: %s", provider.id, e)
            return False
        finally:
            if probing:
                self.registry.release_call(provider.id)
        self.registry.record_outcome(provider.id, latency_ms, True)
        return True

    def stats(self) -> dict[str, Any]:
        """In-flight counts per provider and request totals."""
        in_flight = self.in_flight
        return {
            "in_flight": in_flight,
            "total_in_flight": sum(in_flight.values()),
            "requests": self._requests,
            "failures": self._failures,
            "retries": self._retries,
            "strategy": str(self.strategy.kind),
        }

    async def close(self) -> None:
        await self.transport.close()
