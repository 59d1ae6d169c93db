"""Bundled chain, provider, token and venue defaults."""

from functools import cache
from pathlib import Path
from typing import Any

import yaml

DEFAULTS_PATH = Path(__file__).parent / "defaults.yaml"


@cache
def _load_cached() -> dict[str, Any]:
    with open(DEFAULTS_PATH, encoding="utf-8") as f:
        return yaml.safe_load(f)


def load_defaults() -> dict[str, Any]:
    """
    Load the bundled defaults from defaults.yaml.

    Returns
    -------
    dict[str, Any]
        Raw configuration document (a fresh copy callers may mutate)

    """
    return yaml.safe_load(yaml.safe_dump(_load_cached()))


def get_chain_config(chain: str) -> dict[str, Any]:
    """
    Get configuration for a specific chain.

    Parameters
    ----------
    chain : str
        Chain name (e.g., 'ethereum', 'solana')

    Returns
    -------
    dict[str, Any]
        Chain configuration including providers and tokens

    Raises
    ------
    KeyError
        If chain is not found in configuration

    """
    return _load_cached()["chains"][chain]


def get_rpc_endpoints(chain: str) -> list[str]:
    """
    Get the configured RPC endpoint URLs for a chain.

    Parameters
    ----------
    chain : str
        Chain name

    Returns
    -------
    list[str]
        Endpoint URLs, placeholders unresolved

    """
    return [provider["url"] for provider in get_chain_config(chain)["providers"]]


def get_token_address(chain: str, symbol: str) -> str | None:
    """
    Look up a well-known token address by symbol.

    Parameters
    ----------
    chain : str
        Chain name
    symbol : str
        Token symbol, case-insensitive

    Returns
    -------
    str | None
        Token address, or None when the symbol is unknown

    """
    tokens = get_chain_config(chain).get("tokens", {})
    wanted = symbol.upper()
    for token_symbol, address in tokens.items():
        if token_symbol.upper() == wanted:
            return address
    return None


def get_all_supported_chains() -> list[str]:
    """Get list of all chain names in the defaults."""
    return list(_load_cached()["chains"].keys())


def get_chain_id(chain: str) -> int:
    """Get numeric chain ID."""
    return get_chain_config(chain)["chain_id"]
