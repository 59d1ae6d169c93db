"""Gateway configuration models and loading."""

import logging
import os
import re
from decimal import Decimal
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, field_validator

from chain_gateway.core.models import NATIVE, ChainFamily, LoadBalancingStrategy, ProviderTier
from chain_gateway.data import load_defaults

logger = logging.getLogger(__name__)

CONFIG_ENV_VAR = "CHAIN_GATEWAY_CONFIG"

_PLACEHOLDER = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")


class ScoringWeights(BaseModel):
    """Weights of the provider scoring formula."""

    success: float = 0.4
    latency: float = 0.3
    tier: float = 0.2
    cost: float = 0.1


class CircuitSettings(BaseModel):
    """Circuit breaker thresholds and cooldowns."""

    failure_threshold: int = Field(default=5, ge=1)
    failure_window_s: float = Field(default=60.0, gt=0)
    cooldown_s: float = Field(default=30.0, ge=0)
    backoff_multiplier: float = Field(default=2.0, ge=1)
    max_cooldown_s: float = Field(default=300.0, ge=0)


class PoolSettings(BaseModel):
    """Connection pool limits, timeouts and retry policy."""

    max_connections_per_provider: int = Field(default=10, ge=1)
    max_total_connections: int = Field(default=200, ge=1)
    request_timeout_s: float = Field(default=10.0, gt=0)
    max_retries: int = Field(default=3, ge=0)
    base_delay_s: float = Field(default=0.1, ge=0)
    max_delay_s: float = Field(default=2.0, ge=0)
    exponential_base: float = Field(default=2.0, ge=1)
    strategy: LoadBalancingStrategy = LoadBalancingStrategy.WEIGHTED


class CacheSettings(BaseModel):
    """Response cache size and per-method-class TTLs in seconds."""

    max_entries: int = Field(default=10_000, ge=1)
    ttl: dict[str, float] = Field(
        default_factory=lambda: {
            "balance": 3.0,
            "gas_price": 1.5,
            "transaction": 2.0,
            "static": 3600.0,
            "price": 30.0,
        }
    )


class HealthSettings(BaseModel):
    """Health monitor cadence and billing window."""

    enabled: bool = True
    interval_s: float = Field(default=10.0, gt=0)
    billing_window_s: float = Field(default=86_400.0, gt=0)
    budget_usd: float | None = None


class AggregatorSettings(BaseModel):
    """DEX aggregator fan-out and ranking settings."""

    deadline_s: float = Field(default=2.5, gt=0)
    price_timeout_s: float = Field(default=1.0, gt=0)
    tie_epsilon: Decimal = Decimal("0")
    quote_ttl_s: float = Field(default=15.0, gt=0)


class PricingSettings(BaseModel):
    """USD price source settings."""

    base_url: str = "https://coins.llama.fi"
    timeout_s: float = 5.0


class ProviderSettings(BaseModel):
    """One configured RPC endpoint."""

    id: str
    url: str
    tier: ProviderTier = ProviderTier.STANDARD
    rate_limit_rps: float = Field(default=25.0, gt=0)
    max_concurrency: int | None = None
    cost_per_1k: float = Field(default=0.0, ge=0)
    api_key_env: str | None = None
    api_key: str | None = Field(default=None, repr=False)


class ChainSettings(BaseModel):
    """Static description of one chain."""

    family: ChainFamily = ChainFamily.EVM
    chain_id: int
    native_symbol: str
    native_decimals: int = 18
    wrapped_native: str | None = None
    price_id: str | None = None
    block_time_s: float = Field(default=12.0, gt=0)
    gas_multiplier: float = Field(default=1.2, ge=1)
    providers: list[ProviderSettings] = Field(default_factory=list)
    tokens: dict[str, str] = Field(default_factory=dict)
    intermediates: list[str] = Field(default_factory=list)

    def resolve_token(self, token: str) -> str:
        """Resolve a configured symbol to its address, pass addresses through."""
        if token.upper() in (NATIVE.upper(), self.native_symbol.upper()):
            return NATIVE
        for symbol, address in self.tokens.items():
            if symbol.upper() == token.upper():
                return address
        return token

    def intermediate_addresses(self) -> list[str]:
        return [self.resolve_token(symbol) for symbol in self.intermediates]


class VenueSettings(BaseModel):
    """One configured DEX venue instance."""

    id: str
    type: str
    chains: list[str]
    enabled: bool = True
    api_key_env: str | None = None
    api_key: str | None = Field(default=None, repr=False)
    params: dict[str, Any] = Field(default_factory=dict)


class GatewayConfig(BaseModel):
    """
    Complete gateway configuration.

    Attributes
    ----------
    chains : dict[str, ChainSettings]
        Chain name to chain settings
    venues : list[VenueSettings]
        DEX venue instances
    pool : PoolSettings
        Connection pool settings
    circuit : CircuitSettings
        Circuit breaker settings
    scoring : ScoringWeights
        Provider score weights
    cache : CacheSettings
        Response cache settings
    health : HealthSettings
        Health monitor settings
    aggregator : AggregatorSettings
        DEX aggregator settings
    pricing : PricingSettings
        USD price source settings

    """

    chains: dict[str, ChainSettings] = Field(default_factory=dict)
    venues: list[VenueSettings] = Field(default_factory=list)
    pool: PoolSettings = Field(default_factory=PoolSettings)
    circuit: CircuitSettings = Field(default_factory=CircuitSettings)
    scoring: ScoringWeights = Field(default_factory=ScoringWeights)
    cache: CacheSettings = Field(default_factory=CacheSettings)
    health: HealthSettings = Field(default_factory=HealthSettings)
    aggregator: AggregatorSettings = Field(default_factory=AggregatorSettings)
    pricing: PricingSettings = Field(default_factory=PricingSettings)

    @field_validator("venues")
    @classmethod
    def _unique_venue_ids(cls, venues: list[VenueSettings]) -> list[VenueSettings]:
        ids = [venue.id for venue in venues]
        duplicates = {venue_id for venue_id in ids if ids.count(venue_id) > 1}
        if duplicates:
            msg = f"Duplicate venue ids: {sorted(duplicates)}"
            raise ValueError(msg)
        return venues

    def chain(self, name: str) -> ChainSettings:
        """
        Get settings for a chain.

        Raises
        ------
        KeyError
            If the chain is not configured

        """
        return self.chains[name]


def deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """
    Recursively merge ``override`` into a copy of ``base``.

    Mappings merge key by key; any other value (lists included) replaces the
    base value.

    Parameters
    ----------
    base : dict[str, Any]
        Base document
    override : dict[str, Any]
        Values taking precedence

    Returns
    -------
    dict[str, Any]
        Merged document

    """
    merged = dict(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _expand(value: str, environ: dict[str, str]) -> str:
    return _PLACEHOLDER.sub(lambda m: environ.get(m.group(1), m.group(0)), value)


def _resolve_credentials(config: GatewayConfig, environ: dict[str, str]) -> GatewayConfig:
    for chain_name, chain in config.chains.items():
        resolved = []
        for provider in chain.providers:
            url = _expand(provider.url, environ)
            if _PLACEHOLDER.search(url):
                logger.info("Skipping provider %s on %s: credentials not set", provider.id, chain_name)
                continue
            api_key = provider.api_key or (environ.get(provider.api_key_env) if provider.api_key_env else None)
            resolved.append(provider.model_copy(update={"url": url, "api_key": api_key}))
        chain.providers = resolved

    for venue in config.venues:
        if venue.api_key is None and venue.api_key_env:
            venue.api_key = environ.get(venue.api_key_env)
    return config


def load_config(
    path: str | Path | None = None,
    *,
    overrides: dict[str, Any] | None = None,
    environ: dict[str, str] | None = None,
) -> GatewayConfig:
    """
    Build the gateway configuration.

    The bundled defaults are deep-merged with the user YAML file (``path``, or
    the file named by ``CHAIN_GATEWAY_CONFIG``) and then with ``overrides``.
    ``${VAR}`` placeholders and ``api_key_env`` references are resolved from
    the environment.

    Parameters
    ----------
    path : str | Path | None
        Optional user configuration file
    overrides : dict[str, Any] | None
        In-memory overrides applied last
    environ : dict[str, str] | None
        Environment used for credentials, ``os.environ`` when None

    Returns
    -------
    GatewayConfig
        Validated configuration

    Raises
    ------
    FileNotFoundError
        If an explicit configuration path does not exist

    """
    environ = dict(os.environ) if environ is None else environ
    document = load_defaults()

    path = path or environ.get(CONFIG_ENV_VAR)
    if path:
        with open(path, encoding="utf-8") as f:
            user_document = yaml.safe_load(f) or {}
        document = deep_merge(document, user_document)
        logger.debug("Loaded configuration overrides from %s", path)

    if overrides:
        document = deep_merge(document, overrides)

    config = GatewayConfig.model_validate(document)
    return _resolve_credentials(config, environ)
