"""Pricing services for USD valuation of gas and swap outputs."""

from chain_gateway.pricing.defillama import DeFiLlamaPricing

__all__ = [
    "DeFiLlamaPricing",
]
