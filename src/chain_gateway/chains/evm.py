"""EVM chain adapter speaking Ethereum JSON-RPC."""

import logging
from decimal import Decimal
from typing import Any

from eth_utils import is_address, keccak, to_checksum_address

from chain_gateway.chains.abi import (
    ERC20_BALANCE_OF,
    ERC20_DECIMALS,
    ERC20_SYMBOL,
    decode_result,
    decode_symbol,
    encode_call,
)
from chain_gateway.chains.base import BaseChainAdapter, from_base_units
from chain_gateway.chains.subscription import Subscription
from chain_gateway.core.errors import InvalidRequest, NotFound
from chain_gateway.core.models import (
    NATIVE,
    Balance,
    Block,
    ChainFamily,
    GasPrice,
    PendingTransaction,
    Token,
    Transaction,
    TransactionRequest,
)

logger = logging.getLogger(__name__)


def _int(value: str | int | None) -> int | None:
    if value is None:
        return None
    if isinstance(value, int):
        return value
    return int(value, 16)


class EVMChainAdapter(BaseChainAdapter):
    """
    Adapter for Ethereum-compatible chains.

    Native balances use ``eth_getBalance``; ERC-20 balances and metadata use
    ``eth_call`` with ABI-encoded calldata. Addresses are returned checksummed.
    """

    family = ChainFamily.EVM

    def is_valid_address(self, address: str) -> bool:
        return is_address(address)

    def normalize_address(self, address: str) -> str:
        if not is_address(address):
            msg = f"Invalid EVM address: {address}"
            raise self._invalid(msg, "normalize_address")
        return to_checksum_address(address)

    def _block_from_rpc(self, raw: dict[str, Any] | None, operation: str) -> Block:
        if raw is None:
            raise self._not_found("Block not found", operation)
        return Block(
            chain=self.chain,
            number=_int(raw["number"]),
            hash=raw["hash"],
            parent_hash=raw.get("parentHash"),
            timestamp=_int(raw.get("timestamp")) or 0,
            transactions=[tx if isinstance(tx, str) else tx["hash"] for tx in raw.get("transactions", [])],
            base_fee_per_gas=_int(raw.get("baseFeePerGas")),
            gas_used=_int(raw.get("gasUsed")),
            gas_limit=_int(raw.get("gasLimit")),
        )

    async def call(self, to: str, data: str, block: str = "latest", *, ttl_class: str | None = None) -> str:
        """Execute a read-only contract call (``eth_call``), cached when ``ttl_class`` is given."""
        params = [{"to": self.normalize_address(to), "data": data}, block]
        if ttl_class is None:
            return await self._rpc("eth_call", params)
        return await self._cached("eth_call", params, ttl_class)

    async def _cached_call(self, to: str, data: str, ttl_class: str) -> str:
        return await self.call(to, data, ttl_class=ttl_class)

    def gas_cost_native(self, gas: GasPrice, units: int) -> Decimal:
        """Fee in native units for ``units`` gas at ``gas``."""
        return from_base_units(units * gas.gas_price, self.settings.native_decimals)

    async def get_token_info(self, token: str) -> Token:
        """
        Fetch ERC-20 symbol and decimals.

        Parameters
        ----------
        token : str
            Token address, configured symbol or ``"native"``

        Returns
        -------
        Token
            Token metadata

        Raises
        ------
        InvalidRequest
            If the address is malformed or not an ERC-20 contract

        """
        address = self.resolve_token(token)
        if address == NATIVE:
            return self.native_token
        address = self.normalize_address(address)
        try:
            decimals = decode_result(["uint8"], await self._cached_call(address, encode_call(ERC20_DECIMALS), "static"))[0]
            symbol = decode_symbol(await self._cached_call(address, encode_call(ERC20_SYMBOL), "static"))
        except ValueError as e:
            msg = f"{address} does not look like an ERC-20 token: {e}"
            raise self._invalid(msg, "get_token_info") from e
        return Token(address=address, symbol=symbol, decimals=decimals)

    async def get_balance(self, address: str, token: str | None = None) -> Balance:
        owner = self.normalize_address(address)
        token_info = await self.get_token_info(self.resolve_token(token))

        if token_info.is_native:
            raw = _int(await self._cached("eth_getBalance", [owner, "latest"], "balance"))
        else:
            data = encode_call(ERC20_BALANCE_OF, ["address"], [owner])
            try:
                raw = decode_result(["uint256"], await self._cached_call(token_info.address, data, "balance"))[0]
            except ValueError as e:
                msg = f"balanceOf returned no data for {token_info.address}"
                raise self._invalid(msg, "get_balance") from e

        return Balance(
            chain=self.chain,
            address=owner,
            token=token_info,
            raw=raw,
            amount=from_base_units(raw, token_info.decimals),
        )

    async def estimate_gas(self, tx: TransactionRequest) -> int:
        call: dict[str, Any] = {"value": hex(tx.value)}
        if tx.from_address:
            call["from"] = self.normalize_address(tx.from_address)
        if tx.to:
            call["to"] = self.normalize_address(tx.to)
        if tx.data:
            call["data"] = tx.data
        estimate = _int(await self._rpc("eth_estimateGas", [call]))
        return int(estimate * self.settings.gas_multiplier)

    async def get_gas_price(self) -> GasPrice:
        gas_price = _int(await self._cached("eth_gasPrice", [], "gas_price"))
        base_fee = (await self.get_latest_block()).base_fee_per_gas
        priority_fee = max(gas_price - base_fee, 0) if base_fee is not None else None
        return GasPrice(chain=self.chain, gas_price=gas_price, base_fee=base_fee, priority_fee=priority_fee)

    async def send_transaction(self, signed_tx: str) -> str:
        """
        Broadcast a signed raw transaction.

        A retry landing on a node that already saw the transaction returns
        the locally computed hash.
        """
        raw = signed_tx if signed_tx.startswith("0x") else f"0x{signed_tx}"
        try:
            return await self._rpc("eth_sendRawTransaction", [raw])
        except InvalidRequest as e:
            if "already known" not in str(e).lower():
                raise
            return "0x" + keccak(hexstr=raw).hex()

    async def _fetch_transaction(self, tx_hash: str) -> Transaction:
        tx = await self._rpc("eth_getTransactionByHash", [tx_hash])
        if tx is None:
            raise self._not_found(f"Transaction {tx_hash} not found", "get_transaction")

        transaction = Transaction(
            chain=self.chain,
            hash=tx["hash"],
            from_address=tx.get("from"),
            to_address=tx.get("to"),
            value=_int(tx.get("value")) or 0,
        )
        if tx.get("blockNumber") is None:
            return transaction

        receipt = await self._rpc("eth_getTransactionReceipt", [tx_hash])
        if receipt is None:
            return transaction
        block_number = _int(receipt["blockNumber"])
        head = await self.get_block_number()
        return transaction.model_copy(
            update={
                "block_number": block_number,
                "block_hash": receipt.get("blockHash"),
                "gas_used": _int(receipt.get("gasUsed")),
                "success": _int(receipt.get("status")) == 1,
                "confirmations": max(head - block_number + 1, 0),
            }
        )

    async def get_block_number(self) -> int:
        return _int(await self._cached("eth_blockNumber", [], "block"))

    async def get_latest_block(self) -> Block:
        return self._block_from_rpc(await self._cached("eth_getBlockByNumber", ["latest", False], "block"), "get_latest_block")

    async def get_block(self, number: int) -> Block:
        return self._block_from_rpc(await self._cached("eth_getBlockByNumber", [hex(number), False], "block"), "get_block")

    def subscribe_mempool(self, poll_interval: float | None = None) -> Subscription[PendingTransaction]:
        """
        Subscribe to pending transaction hashes via a node-side filter.

        The filter is recreated when a node no longer knows it (filters are
        local to the node that created them).
        """
        filter_id: list[str | None] = [None]

        async def poll() -> list[PendingTransaction]:
            if filter_id[0] is None:
                filter_id[0] = await self._rpc("eth_newPendingTransactionFilter", [])
                return []
            try:
                hashes = await self._rpc("eth_getFilterChanges", [filter_id[0]])
            except (NotFound, InvalidRequest):
                logger.debug("Pending filter on %s expired, recreating", self.chain)
                filter_id[0] = None
                return []
            return [PendingTransaction(chain=self.chain, hash=tx_hash) for tx_hash in hashes or []]

        interval = poll_interval if poll_interval is not None else max(self.settings.block_time_s / 4, 0.25)
        return Subscription(poll, interval, maxsize=4096, name=f"{self.chain}-mempool").start()
