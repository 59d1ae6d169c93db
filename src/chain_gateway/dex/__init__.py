"""DEX venue adapters and the quote aggregator."""

from chain_gateway.dex import jupiter, oneinch, uniswap_v2, uniswap_v3  # noqa: F401  (registers venue types)
from chain_gateway.dex.aggregator import DexAggregator, VenueStats, net_output
from chain_gateway.dex.base import BaseVenueAdapter, VenueContext
from chain_gateway.dex.registry import VenueRegistry, build_venues

__all__ = [
    "BaseVenueAdapter",
    "DexAggregator",
    "VenueContext",
    "VenueRegistry",
    "VenueStats",
    "build_venues",
    "net_output",
]
