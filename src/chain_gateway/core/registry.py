"""Provider registry: health bookkeeping, scoring and circuit state per chain."""

import logging
import threading
import time
from collections.abc import Callable
from typing import Any

from chain_gateway.core.circuit import CircuitBreaker
from chain_gateway.core.config import CircuitSettings, ProviderSettings, ScoringWeights
from chain_gateway.core.errors import ErrorKind
from chain_gateway.core.models import CircuitState, Provider, ProviderTier

logger = logging.getLogger(__name__)

TIER_WEIGHTS = {
    ProviderTier.PREMIUM: 1.0,
    ProviderTier.STANDARD: 0.6,
    ProviderTier.FALLBACK: 0.3,
}

LATENCY_EMA_ALPHA = 0.2


class ProviderRegistry:
    """
    Registry of RPC providers grouped into per-chain sets ordered by score.

    All mutation happens under one lock, so the registry may be shared by
    every task of the gateway and by the health monitor.

    Parameters
    ----------
    circuit : CircuitSettings | None
        Circuit breaker settings
    weights : ScoringWeights | None
        Score weights
    budget_usd : float | None
        Per-provider spend limit for one billing window, unlimited when None
    billing_window_s : float
        Length of a billing window in seconds
    clock : Callable[[], float]
        Monotonic time source

    """

    def __init__(
        self,
        circuit: CircuitSettings | None = None,
        weights: ScoringWeights | None = None,
        budget_usd: float | None = None,
        billing_window_s: float = 86_400.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.breaker = CircuitBreaker(circuit, clock=clock)
        self.weights = weights or ScoringWeights()
        self.budget_usd = budget_usd
        self.billing_window_s = billing_window_s
        self._clock = clock
        self._window_started = clock()
        self._providers: dict[str, Provider] = {}
        self._sets: dict[str, list[Provider]] = {}
        self._lock = threading.Lock()

    def register(self, provider: Provider) -> Provider:
        """
        Add a provider to its chain's set.

        Raises
        ------
        ValueError
            If a provider with the same id is already registered

        """
        with self._lock:
            if provider.id in self._providers:
                msg = f"Provider {provider.id} is already registered"
                raise ValueError(msg)
            self._providers[provider.id] = provider
            self._sets.setdefault(provider.chain, []).append(provider)
            self._rescore(provider.chain)
        logger.debug("Registered provider %s for %s (%s)", provider.id, provider.chain, provider.tier)
        return provider

    def register_settings(self, chain: str, settings: ProviderSettings) -> Provider:
        """Create and register a provider from its configuration entry."""
        provider = Provider(
            chain=chain,
            **settings.model_dump(exclude={"api_key_env"}),
        )
        return self.register(provider)

    def get(self, provider_id: str) -> Provider:
        """
        Get a provider by id.

        Raises
        ------
        KeyError
            If the provider is unknown

        """
        return self._providers[provider_id]

    def has_chain(self, chain: str) -> bool:
        return bool(self._sets.get(chain))

    def chains(self) -> list[str]:
        return [chain for chain, providers in self._sets.items() if providers]

    def providers(self, chain: str) -> list[Provider]:
        """All providers of a chain, best score first, regardless of health."""
        with self._lock:
            return list(self._sets.get(chain, []))

    def list_healthy(self, chain: str) -> list[Provider]:
        """
        Get providers eligible for traffic, best score first.

        Excludes disabled providers, open circuits, half-open circuits whose
        probe slot is taken and providers over their billing budget. Open
        circuits whose cooldown elapsed become half-open here.

        Parameters
        ----------
        chain : str
            Chain name

        Returns
        -------
        list[Provider]
            Healthy providers (empty for unknown chains)

        """
        with self._lock:
            return [provider for provider in self._sets.get(chain, []) if self._eligible(provider)]

    def _eligible(self, provider: Provider) -> bool:
        if not provider.enabled:
            return False
        if self.budget_usd is not None and provider.accrued_cost >= self.budget_usd:
            return False
        return self.breaker.admits(provider)

    def begin_call(self, provider_id: str) -> bool:
        """Claim permission to call a provider (the half-open probe slot)."""
        with self._lock:
            provider = self._providers[provider_id]
            if not provider.enabled:
                return False
            return self.breaker.begin_call(provider)

    def release_call(self, provider_id: str) -> None:
        """Give back a half-open probe slot that ended without an outcome."""
        with self._lock:
            provider = self._providers[provider_id]
            if provider.circuit == CircuitState.HALF_OPEN:
                provider._probe_in_flight = False

    def record_outcome(
        self,
        provider_id: str,
        latency_ms: float,
        success: bool,
        cost_units: int = 1,
        error_kind: ErrorKind | None = None,
    ) -> Provider:
        """
        Record the result of one request.

        Parameters
        ----------
        provider_id : str
            Provider that served the request
        latency_ms : float
            Observed latency
        success : bool
            Whether the request succeeded
        cost_units : int
            Billable requests consumed
        error_kind : ErrorKind | None
            Classification of the failure

        Returns
        -------
        Provider
            Updated provider

        """
        with self._lock:
            provider = self._providers[provider_id]
            if provider._outcomes:
                provider.latency_ms = (1 - LATENCY_EMA_ALPHA) * provider.latency_ms + LATENCY_EMA_ALPHA * latency_ms
            else:
                provider.latency_ms = latency_ms
            provider._outcomes.append(success)
            provider.success_rate = sum(provider._outcomes) / len(provider._outcomes)
            provider.accrued_cost += provider.cost_per_1k * cost_units / 1000
            provider.total_requests += 1

            if success:
                provider.consecutive_failures = 0
                self.breaker.on_success(provider)
            else:
                provider.consecutive_failures += 1
                provider.failed_requests += 1
                provider.last_error = str(error_kind) if error_kind else "error"
                self.breaker.on_failure(provider)

            self._rescore(provider.chain)
            return provider

    def disable(self, provider_id: str) -> None:
        with self._lock:
            self._providers[provider_id].enabled = False
        logger.warning("Provider %s disabled", provider_id)

    def enable(self, provider_id: str) -> None:
        with self._lock:
            self._providers[provider_id].enabled = True
        logger.info("Provider %s enabled", provider_id)

    def refresh(self) -> None:
        """Recompute every score, advance circuits and roll the billing window."""
        with self._lock:
            now = self._clock()
            if now - self._window_started >= self.billing_window_s:
                self._window_started = now
                for provider in self._providers.values():
                    provider.accrued_cost = 0.0
                logger.info("Billing window rolled over")
            for provider in self._providers.values():
                self.breaker.poll(provider)
            for chain in self._sets:
                self._rescore(chain)

    def _rescore(self, chain: str) -> None:
        providers = self._sets.get(chain, [])
        if not providers:
            return
        min_latency = max(min(p.latency_ms for p in providers), 1e-6)
        max_cost = max(p.cost_per_1k for p in providers)
        for provider in providers:
            normalized_latency = max(provider.latency_ms, 1e-6) / min_latency
            normalized_cost = provider.cost_per_1k / max_cost if max_cost > 0 else 0.0
            provider.score = (
                self.weights.success * provider.success_rate
                + self.weights.latency * (1 / normalized_latency)
                + self.weights.tier * TIER_WEIGHTS[provider.tier]
                - self.weights.cost * normalized_cost
            )
        providers.sort(key=lambda p: (-p.score, p.consecutive_failures))

    def snapshot(self) -> dict[str, list[dict[str, Any]]]:
        """
        Get health and score of every provider.

        Returns
        -------
        dict[str, list[dict[str, Any]]]
            Chain name to provider dictionaries, best score first

        """
        with self._lock:
            return {
                chain: [
                    provider.model_dump(
                        mode="json",
                        include={
                            "id",
                            "tier",
                            "circuit",
                            "enabled",
                            "score",
                            "latency_ms",
                            "success_rate",
                            "consecutive_failures",
                            "accrued_cost",
                            "total_requests",
                            "failed_requests",
                            "last_error",
                        },
                    )
                    for provider in providers
                ]
                for chain, providers in self._sets.items()
            }

    def open_providers(self, chain: str) -> list[str]:
        with self._lock:
            return [p.id for p in self._sets.get(chain, []) if p.circuit == CircuitState.OPEN]
