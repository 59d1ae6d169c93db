"""Load-balancing strategies for choosing a provider among healthy candidates."""

import itertools
import random
from abc import ABC, abstractmethod
from collections.abc import Mapping, Sequence
from typing import ClassVar

from chain_gateway.core.models import LoadBalancingStrategy, Provider


class SelectionStrategy(ABC):
    """
    Base class for provider selection strategies.

    Candidates arrive ordered best score first and are never empty.
    """

    kind: ClassVar[LoadBalancingStrategy]

    def __init__(self, rng: random.Random | None = None) -> None:
        self.rng = rng or random.Random()

    @abstractmethod
    def select(self, candidates: Sequence[Provider], in_flight: Mapping[str, int]) -> Provider:
        """
        Choose one provider.

        Parameters
        ----------
        candidates : Sequence[Provider]
            Healthy providers, best score first
        in_flight : Mapping[str, int]
            Current in-flight request count per provider id

        Returns
        -------
        Provider
            Selected provider

        """


class RoundRobinStrategy(SelectionStrategy):
    kind = LoadBalancingStrategy.ROUND_ROBIN

    def __init__(self, rng: random.Random | None = None) -> None:
        super().__init__(rng)
        self._counter = itertools.count()

    def select(self, candidates: Sequence[Provider], in_flight: Mapping[str, int]) -> Provider:
        ordered = sorted(candidates, key=lambda p: p.id)
        return ordered[next(self._counter) % len(ordered)]


class LeastInFlightStrategy(SelectionStrategy):
    kind = LoadBalancingStrategy.LEAST_IN_FLIGHT

    def select(self, candidates: Sequence[Provider], in_flight: Mapping[str, int]) -> Provider:
        # min() keeps the first (best scored) provider on ties
        return min(candidates, key=lambda p: in_flight.get(p.id, 0))


class WeightedStrategy(SelectionStrategy):
    """Random choice with probability proportional to score."""

    kind = LoadBalancingStrategy.WEIGHTED

    def select(self, candidates: Sequence[Provider], in_flight: Mapping[str, int]) -> Provider:
        weights = [max(p.score, 0.0) for p in candidates]
        if sum(weights) <= 0:
            return candidates[0]
        return self.rng.choices(list(candidates), weights=weights, k=1)[0]


class LatencyBiasedStrategy(SelectionStrategy):
    """Random choice weighted by inverse squared latency."""

    kind = LoadBalancingStrategy.LATENCY_BIASED

    def select(self, candidates: Sequence[Provider], in_flight: Mapping[str, int]) -> Provider:
        weights = [1.0 / max(p.latency_ms, 0.01) ** 2 for p in candidates]
        return self.rng.choices(list(candidates), weights=weights, k=1)[0]


STRATEGIES: dict[LoadBalancingStrategy, type[SelectionStrategy]] = {
    cls.kind: cls
    for cls in (RoundRobinStrategy, LeastInFlightStrategy, WeightedStrategy, LatencyBiasedStrategy)
}


def get_strategy(kind: LoadBalancingStrategy | str, rng: random.Random | None = None) -> SelectionStrategy:
    """
    Instantiate the strategy for a configured kind.

    Raises
    ------
    ValueError
        If the kind is unknown

    """
    return STRATEGIES[LoadBalancingStrategy(kind)](rng)
