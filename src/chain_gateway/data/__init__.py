"""Bundled defaults and lookup helpers."""

from chain_gateway.data.loader import (
    DEFAULTS_PATH,
    get_all_supported_chains,
    get_chain_config,
    get_chain_id,
    get_rpc_endpoints,
    get_token_address,
    load_defaults,
)

__all__ = [
    "DEFAULTS_PATH",
    "get_all_supported_chains",
    "get_chain_config",
    "get_chain_id",
    "get_rpc_endpoints",
    "get_token_address",
    "load_defaults",
]
