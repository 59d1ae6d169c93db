"""Core functionality including models, configuration, errors, and the provider registry."""

from chain_gateway.core.config import GatewayConfig, load_config
from chain_gateway.core.errors import (
    AllProvidersUnavailable,
    ChainUnavailable,
    GatewayError,
    InvalidRequest,
    NotFound,
    RateLimited,
    RequestTimeout,
    Unavailable,
)
from chain_gateway.core.models import (
    AggregatedQuoteResult,
    Balance,
    Block,
    CircuitState,
    GasPrice,
    LoadBalancingStrategy,
    Provider,
    ProviderTier,
    Quote,
    Token,
    Transaction,
    TransactionOutcome,
)
from chain_gateway.core.registry import ProviderRegistry

__all__ = [
    "AggregatedQuoteResult",
    "AllProvidersUnavailable",
    "Balance",
    "Block",
    "ChainUnavailable",
    "CircuitState",
    "GasPrice",
    "GatewayConfig",
    "GatewayError",
    "InvalidRequest",
    "LoadBalancingStrategy",
    "NotFound",
    "Provider",
    "ProviderRegistry",
    "ProviderTier",
    "Quote",
    "RateLimited",
    "RequestTimeout",
    "Token",
    "Transaction",
    "TransactionOutcome",
    "Unavailable",
    "load_config",
]
