"""RPC layer with connection pooling, rate limiting, retry logic, caching and health probes."""

from chain_gateway.rpc.cache import CacheEntry, ResponseCache
from chain_gateway.rpc.health import HealthMonitor
from chain_gateway.rpc.pool import ConnectionPool
from chain_gateway.rpc.ratelimit import ProviderGate, RateLimiter
from chain_gateway.rpc.retry import RetryConfig, RetryState, RetryTracker
from chain_gateway.rpc.strategies import SelectionStrategy, get_strategy
from chain_gateway.rpc.transport import JsonRpcTransport, Transport

__all__ = [
    "CacheEntry",
    "ConnectionPool",
    "HealthMonitor",
    "JsonRpcTransport",
    "ProviderGate",
    "RateLimiter",
    "ResponseCache",
    "RetryConfig",
    "RetryState",
    "RetryTracker",
    "SelectionStrategy",
    "Transport",
    "get_strategy",
]
