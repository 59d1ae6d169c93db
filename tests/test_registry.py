"""Tests for the provider registry and circuit breaker."""

import pytest

from chain_gateway.core.circuit import CircuitBreaker
from chain_gateway.core.config import CircuitSettings, ProviderSettings
from chain_gateway.core.models import CircuitState, ProviderTier
from chain_gateway.core.registry import ProviderRegistry

from conftest import FakeClock, make_provider


def _fail(registry: ProviderRegistry, provider_id: str, times: int) -> None:
    for _ in range(times):
        registry.record_outcome(provider_id, 100.0, False)


def test_register_rejects_duplicate_ids(registry):
    """Test that provider ids are unique."""
    registry.register(make_provider("node-a"))

    with pytest.raises(ValueError, match="already registered"):
        registry.register(make_provider("node-a"))


def test_register_settings(registry):
    """Test building a provider from its configuration entry."""
    provider = registry.register_settings(
        "bsc",
        ProviderSettings(id="dataseed", url="https://bsc.example", tier=ProviderTier.FALLBACK, api_key="k"),
    )

    assert provider.chain == "bsc"
    assert provider.api_key == "k"
    assert registry.has_chain("bsc")
    assert registry.chains() == ["bsc"]
    assert not registry.has_chain("ethereum")


def test_circuit_opens_after_threshold(registry):
    """Test closed -> open after five consecutive failures."""
    registry.register(make_provider("node-a"))

    _fail(registry, "node-a", 4)
    assert registry.get("node-a").circuit == CircuitState.CLOSED

    _fail(registry, "node-a", 1)
    provider = registry.get("node-a")
    assert provider.circuit == CircuitState.OPEN
    assert provider.open_count == 1
    assert registry.list_healthy("ethereum") == []
    assert registry.open_providers("ethereum") == ["node-a"]


def test_success_resets_consecutive_failures(registry):
    """Test that failures must be consecutive to open the circuit."""
    registry.register(make_provider("node-a"))

    _fail(registry, "node-a", 4)
    registry.record_outcome("node-a", 100.0, True)
    _fail(registry, "node-a", 4)

    assert registry.get("node-a").circuit == CircuitState.CLOSED


def test_failures_outside_window_do_not_count(registry, clock):
    """Test the failure window of the breaker."""
    registry.register(make_provider("node-a"))

    _fail(registry, "node-a", 4)
    clock.advance(61)
    _fail(registry, "node-a", 1)

    assert registry.get("node-a").circuit == CircuitState.CLOSED


def test_half_open_after_cooldown_admits_single_probe(registry, clock):
    """Test open -> half_open after cooldown with one probe slot."""
    registry.register(make_provider("node-a"))
    _fail(registry, "node-a", 5)

    clock.advance(29)
    assert registry.list_healthy("ethereum") == []

    clock.advance(1)
    healthy = registry.list_healthy("ethereum")
    assert [p.id for p in healthy] == ["node-a"]
    assert healthy[0].circuit == CircuitState.HALF_OPEN

    assert registry.begin_call("node-a") is True
    assert registry.begin_call("node-a") is False
    assert registry.list_healthy("ethereum") == []


def test_half_open_success_closes(registry, clock):
    """Test half_open -> closed on probe success."""
    registry.register(make_provider("node-a"))
    _fail(registry, "node-a", 5)
    clock.advance(30)
    registry.list_healthy("ethereum")
    registry.begin_call("node-a")

    registry.record_outcome("node-a", 50.0, True)

    provider = registry.get("node-a")
    assert provider.circuit == CircuitState.CLOSED
    assert provider.open_count == 0
    assert registry.begin_call("node-a") is True


def test_half_open_failure_reopens_with_backoff(registry, clock):
    """Test half_open -> open on probe failure and doubled cooldown."""
    registry.register(make_provider("node-a"))
    _fail(registry, "node-a", 5)
    clock.advance(30)
    registry.list_healthy("ethereum")
    registry.begin_call("node-a")

    _fail(registry, "node-a", 1)

    provider = registry.get("node-a")
    assert provider.circuit == CircuitState.OPEN
    assert provider.open_count == 2
    assert registry.breaker.cooldown(provider) == 60.0

    clock.advance(59)
    assert registry.list_healthy("ethereum") == []
    clock.advance(1)
    assert registry.get("node-a").circuit == CircuitState.OPEN
    assert [p.id for p in registry.list_healthy("ethereum")] == ["node-a"]


def test_late_success_keeps_circuit_open(registry, clock):
    """Test a success finishing after the circuit opened does not close it."""
    registry.register(make_provider("node-a"))
    _fail(registry, "node-a", 5)

    registry.record_outcome("node-a", 40.0, True)

    provider = registry.get("node-a")
    assert provider.circuit == CircuitState.OPEN
    assert provider.open_count == 1
    assert provider.opened_at is not None
    assert provider.total_requests == 6
    assert registry.list_healthy("ethereum") == []

    clock.advance(29)
    assert registry.list_healthy("ethereum") == []
    clock.advance(1)
    assert [p.id for p in registry.list_healthy("ethereum")] == ["node-a"]


def test_release_call_frees_probe_slot(registry, clock):
    """Test that an abandoned probe gives the slot back."""
    registry.register(make_provider("node-a"))
    _fail(registry, "node-a", 5)
    clock.advance(30)
    registry.list_healthy("ethereum")
    assert registry.begin_call("node-a")

    registry.release_call("node-a")

    assert registry.begin_call("node-a") is True


def test_cooldown_is_capped():
    """Test exponential cooldown respects max_cooldown_s."""
    breaker = CircuitBreaker(CircuitSettings(cooldown_s=30, backoff_multiplier=2, max_cooldown_s=300), clock=FakeClock())
    provider = make_provider("node-a")

    cooldowns = []
    for open_count in range(1, 7):
        provider.open_count = open_count
        cooldowns.append(breaker.cooldown(provider))

    assert cooldowns == [30, 60, 120, 240, 300, 300]


def test_disabled_provider_excluded(registry):
    """Test that disabled providers are never listed."""
    registry.register(make_provider("node-a"))
    registry.register(make_provider("node-b"))

    registry.disable("node-a")
    assert [p.id for p in registry.list_healthy("ethereum")] == ["node-b"]
    assert registry.begin_call("node-a") is False

    registry.enable("node-a")
    assert {p.id for p in registry.list_healthy("ethereum")} == {"node-a", "node-b"}


def test_scoring_orders_by_success_latency_and_tier(registry):
    """Test the scoring formula ordering."""
    registry.register(make_provider("fast-premium", tier=ProviderTier.PREMIUM))
    registry.register(make_provider("slow-standard", tier=ProviderTier.STANDARD))
    registry.register(make_provider("flaky-fallback", tier=ProviderTier.FALLBACK))

    registry.record_outcome("fast-premium", 50.0, True)
    registry.record_outcome("slow-standard", 200.0, True)
    registry.record_outcome("flaky-fallback", 50.0, False)

    ordered = [p.id for p in registry.providers("ethereum")]
    assert ordered == ["fast-premium", "slow-standard", "flaky-fallback"]

    fast = registry.get("fast-premium")
    # success 1.0, latency ratio 1.0, premium tier 1.0, no cost
    assert fast.score == pytest.approx(0.4 + 0.3 + 0.2)
    slow = registry.get("slow-standard")
    assert slow.score == pytest.approx(0.4 + 0.3 * 0.25 + 0.2 * 0.6)


def test_cost_lowers_score(registry):
    """Test that relative cost is subtracted from the score."""
    registry.register(make_provider("paid", cost_per_1k=1.0))
    registry.register(make_provider("free"))

    registry.refresh()

    assert registry.get("free").score - registry.get("paid").score == pytest.approx(0.1)
    assert registry.providers("ethereum")[0].id == "free"


def test_ties_broken_by_consecutive_failures(registry):
    """Test tie breaking on equal scores."""
    registry.register(make_provider("node-a"))
    registry.register(make_provider("node-b"))
    provider_a = registry.get("node-a")
    provider_a.consecutive_failures = 2

    registry.refresh()

    assert [p.id for p in registry.providers("ethereum")] == ["node-b", "node-a"]


def test_latency_is_exponential_moving_average(registry):
    """Test latency EMA with alpha 0.2."""
    registry.register(make_provider("node-a"))

    registry.record_outcome("node-a", 100.0, True)
    registry.record_outcome("node-a", 200.0, True)

    assert registry.get("node-a").latency_ms == pytest.approx(120.0)


def test_success_rate_window(registry):
    """Test rolling success rate over the last 100 outcomes."""
    registry.register(make_provider("node-a"))

    registry.record_outcome("node-a", 10.0, False)
    for _ in range(100):
        registry.record_outcome("node-a", 10.0, True)

    assert registry.get("node-a").success_rate == 1.0


def test_budget_excludes_provider_until_window_rolls(clock):
    """Test billing budget exclusion and window rollover."""
    registry = ProviderRegistry(budget_usd=0.002, billing_window_s=3600, clock=clock)
    registry.register(make_provider("paid", cost_per_1k=1.0))

    registry.record_outcome("paid", 10.0, True)
    assert registry.list_healthy("ethereum")
    registry.record_outcome("paid", 10.0, True)
    assert registry.list_healthy("ethereum") == []

    clock.advance(3600)
    registry.refresh()
    assert registry.get("paid").accrued_cost == 0.0
    assert registry.list_healthy("ethereum")


def test_snapshot_hides_credentials(registry):
    """Test snapshot content."""
    registry.register(make_provider("node-a", api_key="secret"))

    snapshot = registry.snapshot()

    entry = snapshot["ethereum"][0]
    assert entry["id"] == "node-a"
    assert entry["circuit"] == "closed"
    assert "api_key" not in entry
    assert "url" not in entry
