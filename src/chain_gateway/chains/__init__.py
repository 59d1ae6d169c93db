"""Chain adapters exposing one uniform operation set per wire family."""

from chain_gateway.chains.base import BaseChainAdapter, from_base_units, to_base_units
from chain_gateway.chains.evm import EVMChainAdapter
from chain_gateway.chains.solana import SolanaChainAdapter
from chain_gateway.chains.subscription import Subscription
from chain_gateway.core.models import ChainFamily

ADAPTERS: dict[ChainFamily, type[BaseChainAdapter]] = {
    ChainFamily.EVM: EVMChainAdapter,
    ChainFamily.SOLANA: SolanaChainAdapter,
}

__all__ = [
    "ADAPTERS",
    "BaseChainAdapter",
    "EVMChainAdapter",
    "SolanaChainAdapter",
    "Subscription",
    "from_base_units",
    "to_base_units",
]
