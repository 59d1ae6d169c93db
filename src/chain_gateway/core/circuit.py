"""Per-provider circuit breaker."""

import logging
import time
from collections.abc import Callable

from chain_gateway.core.config import CircuitSettings
from chain_gateway.core.models import CircuitState, Provider

logger = logging.getLogger(__name__)


class CircuitBreaker:
    """
    Drives the circuit state stored on each ``Provider``.

    Closed opens after ``failure_threshold`` consecutive failures inside
    ``failure_window_s``. Open becomes half-open once its cooldown elapses;
    the cooldown doubles (by ``backoff_multiplier``) with every reopening up
    to ``max_cooldown_s``. Half-open admits a single probe whose outcome
    closes or reopens the circuit.

    Parameters
    ----------
    settings : CircuitSettings
        Thresholds and cooldowns
    clock : Callable[[], float]
        Monotonic time source

    """

    def __init__(self, settings: CircuitSettings | None = None, clock: Callable[[], float] = time.monotonic) -> None:
        self.settings = settings or CircuitSettings()
        self._clock = clock

    def cooldown(self, provider: Provider) -> float:
        """Cooldown of the provider's current open period in seconds."""
        exponent = max(provider.open_count - 1, 0)
        delay = self.settings.cooldown_s * self.settings.backoff_multiplier**exponent
        return min(delay, self.settings.max_cooldown_s)

    def poll(self, provider: Provider) -> CircuitState:
        """Move an open circuit to half-open when its cooldown has elapsed."""
        if provider.circuit == CircuitState.OPEN and provider.opened_at is not None:
            if self._clock() - provider.opened_at >= self.cooldown(provider):
                provider.circuit = CircuitState.HALF_OPEN
                provider._probe_in_flight = False
                logger.info("Circuit half-open for provider %s", provider.id)
        return provider.circuit

    def admits(self, provider: Provider) -> bool:
        state = self.poll(provider)
        if state == CircuitState.CLOSED:
            return True
        return state == CircuitState.HALF_OPEN and not provider._probe_in_flight

    def begin_call(self, provider: Provider) -> bool:
        """
        Claim permission to send a request.

        Returns
        -------
        bool
            True if the request may proceed (for half-open circuits only the
            first caller gets the probe slot)

        """
        state = self.poll(provider)
        if state == CircuitState.CLOSED:
            return True
        if state == CircuitState.HALF_OPEN and not provider._probe_in_flight:
            provider._probe_in_flight = True
            return True
        return False

    def on_success(self, provider: Provider) -> None:
        """
        Record a successful request.

        Only the half-open probe closes a circuit. A success that lands while
        the circuit is open came from a request sent before it opened and
        leaves the open period and its backoff untouched.
        """
        if provider.circuit == CircuitState.OPEN:
            return
        provider._failure_times.clear()
        provider._probe_in_flight = False
        if provider.circuit == CircuitState.HALF_OPEN:
            logger.info("Circuit closed for provider %s", provider.id)
            provider.circuit = CircuitState.CLOSED
            provider.open_count = 0
            provider.opened_at = None

    def on_failure(self, provider: Provider) -> None:
        now = self._clock()
        failures = provider._failure_times
        failures.append(now)
        while failures and now - failures[0] > self.settings.failure_window_s:
            failures.popleft()
        provider._probe_in_flight = False

        if provider.circuit == CircuitState.HALF_OPEN:
            self._open(provider, now)
        elif provider.circuit == CircuitState.CLOSED and len(failures) >= self.settings.failure_threshold:
            self._open(provider, now)

    def _open(self, provider: Provider, now: float) -> None:
        provider.circuit = CircuitState.OPEN
        provider.open_count += 1
        provider.opened_at = now
        provider._failure_times.clear()
        logger.warning(
            "Circuit opened for provider %s after %d consecutive failures (cooldown %.1fs)",
            provider.id,
            provider.consecutive_failures,
            self.cooldown(provider),
        )
