"""Multi-chain RPC gateway with provider failover and DEX quote aggregation."""

from chain_gateway.core.config import GatewayConfig, load_config
from chain_gateway.gateway import ChainGateway

__version__ = "0.1.0"

__all__ = [
    "ChainGateway",
    "GatewayConfig",
    "__version__",
    "load_config",
]
