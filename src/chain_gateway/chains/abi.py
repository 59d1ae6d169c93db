"""Minimal ABI helpers for eth_call encoding and decoding."""

from collections.abc import Sequence
from typing import Any

from eth_abi import decode, encode
from eth_abi.exceptions import DecodingError
from eth_utils import function_signature_to_4byte_selector

ERC20_BALANCE_OF = "balanceOf(address)"
ERC20_DECIMALS = "decimals()"
ERC20_SYMBOL = "symbol()"


def encode_call(signature: str, arg_types: Sequence[str] = (), args: Sequence[Any] = ()) -> str:
    """
    Encode calldata for a contract function.

    Parameters
    ----------
    signature : str
        Canonical function signature, e.g. ``"balanceOf(address)"``
    arg_types : Sequence[str]
        ABI types of the arguments
    args : Sequence[Any]
        Argument values

    Returns
    -------
    str
        0x-prefixed calldata

    """
    selector = function_signature_to_4byte_selector(signature)
    return "0x" + (selector + encode(list(arg_types), list(args))).hex()


def decode_result(result_types: Sequence[str], data: str) -> tuple[Any, ...]:
    """
    Decode eth_call return data.

    Raises
    ------
    ValueError
        If the data is empty or does not match the types
    """
    raw = bytes.fromhex(data.removeprefix("0x"))
    if not raw:
        msg = "Empty return data"
        raise ValueError(msg)
    try:
        return decode(list(result_types), raw)
    except DecodingError as e:
        msg = f"Cannot decode return data as {list(result_types)}: {e}"
        raise ValueError(msg) from e


def decode_symbol(data: str) -> str:
    """Decode an ERC-20 symbol returned as ``string`` or legacy ``bytes32``."""
    # a bytes32 return is a single word, a string return is at least two
    if len(data.removeprefix("0x")) > 64:
        return decode_result(["string"], data)[0]
    raw = decode_result(["bytes32"], data)[0]
    return raw.rstrip(b"\x00").decode("utf-8", errors="replace")

