"""Solana chain adapter speaking the Solana JSON-RPC API."""

import logging
import statistics
from decimal import Decimal
from typing import Any

from solders.pubkey import Pubkey

from chain_gateway.chains.base import BaseChainAdapter, from_base_units
from chain_gateway.chains.subscription import Subscription
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

BASE_FEE_LAMPORTS = 5000
DEFAULT_COMPUTE_UNITS = 200_000
COMMITMENT = {"commitment": "confirmed"}


class SolanaChainAdapter(BaseChainAdapter):
    """
    Adapter for Solana.

    Blocks are slots, transaction hashes are base58 signatures, the gas price
    is the prioritization fee in micro-lamports per compute unit. Solana has
    no public mempool.
    """

    family = ChainFamily.SOLANA

    def is_valid_address(self, address: str) -> bool:
        try:
            Pubkey.from_string(address)
        except ValueError:
            return False
        return True

    def normalize_address(self, address: str) -> str:
        try:
            return str(Pubkey.from_string(address))
        except ValueError as e:
            msg = f"Invalid Solana address: {address}"
            raise self._invalid(msg, "normalize_address") from e

    def _symbol_for(self, mint: str) -> str | None:
        for symbol, address in self.settings.tokens.items():
            if address == mint:
                return symbol
        return None

    async def get_token_info(self, token: str) -> Token:
        mint = self.resolve_token(token)
        if mint == NATIVE:
            return self.native_token
        mint = self.normalize_address(mint)
        supply = await self._cached("getTokenSupply", [mint], "static")
        decimals = supply["value"]["decimals"]
        return Token(address=mint, symbol=self._symbol_for(mint) or mint[:4], decimals=decimals)

    async def get_balance(self, address: str, token: str | None = None) -> Balance:
        owner = self.normalize_address(address)
        token_info = await self.get_token_info(self.resolve_token(token))

        if token_info.is_native:
            result = await self._cached("getBalance", [owner, COMMITMENT], "balance")
            raw = int(result["value"])
        else:
            result = await self._cached(
                "getTokenAccountsByOwner",
                [owner, {"mint": token_info.address}, {"encoding": "jsonParsed", **COMMITMENT}],
                "balance",
            )
            raw = sum(
                int(account["account"]["data"]["parsed"]["info"]["tokenAmount"]["amount"])
                for account in result["value"]
            )

        return Balance(
            chain=self.chain,
            address=owner,
            token=token_info,
            raw=raw,
            amount=from_base_units(raw, token_info.decimals),
        )

    async def estimate_gas(self, tx: TransactionRequest) -> int:
        """
        Estimate compute units.

        Simulates the serialized transaction when one is given, otherwise
        returns the default per-instruction budget.
        """
        if not tx.serialized:
            return DEFAULT_COMPUTE_UNITS
        result = await self._rpc(
            "simulateTransaction",
            [tx.serialized, {"encoding": "base64", "sigVerify": False, "replaceRecentBlockhash": True, **COMMITMENT}],
        )
        value = result["value"]
        if value.get("err") is not None:
            msg = f"Simulation failed: {value['err']}"
            raise self._invalid(msg, "estimate_gas")
        units = value.get("unitsConsumed") or DEFAULT_COMPUTE_UNITS
        return int(units * self.settings.gas_multiplier)

    def gas_cost_native(self, gas: GasPrice, units: int) -> Decimal:
        """Signature fee plus prioritization fee for ``units`` compute units."""
        lamports = (gas.base_fee or BASE_FEE_LAMPORTS) + gas.gas_price * units // 1_000_000
        return from_base_units(lamports, self.settings.native_decimals)

    async def get_gas_price(self) -> GasPrice:
        fees = await self._cached("getRecentPrioritizationFees", [], "gas_price")
        samples = [entry["prioritizationFee"] for entry in fees or []]
        priority = int(statistics.median(samples)) if samples else 0
        return GasPrice(chain=self.chain, gas_price=priority, base_fee=BASE_FEE_LAMPORTS, priority_fee=priority)

    async def send_transaction(self, signed_tx: str) -> str:
        return await self._rpc("sendTransaction", [signed_tx, {"encoding": "base64", "preflightCommitment": "confirmed"}])

    async def _fetch_transaction(self, tx_hash: str) -> Transaction:
        result = await self._rpc("getSignatureStatuses", [[tx_hash], {"searchTransactionHistory": True}])
        status: dict[str, Any] | None = result["value"][0]
        if status is None:
            raise self._not_found(f"Signature {tx_hash} not found", "get_transaction")

        slot = status["slot"]
        confirmations = status.get("confirmations")
        if confirmations is None:
            # finalized
            confirmations = max(await self.get_block_number() - slot + 1, 1)
        return Transaction(
            chain=self.chain,
            hash=tx_hash,
            block_number=slot,
            success=status.get("err") is None,
            confirmations=confirmations,
        )

    async def get_block_number(self) -> int:
        return await self._cached("getSlot", [COMMITMENT], "block")

    async def get_latest_block(self) -> Block:
        result = await self._cached("getLatestBlockhash", [COMMITMENT], "block")
        return Block(chain=self.chain, number=result["context"]["slot"], hash=result["value"]["blockhash"])

    async def get_block(self, number: int) -> Block:
        result = await self._cached(
            "getBlock",
            [
                number,
                {
                    "encoding": "json",
                    "transactionDetails": "signatures",
                    "rewards": False,
                    "maxSupportedTransactionVersion": 0,
                    **COMMITMENT,
                },
            ],
            "static",
        )
        if result is None:
            raise self._not_found(f"Slot {number} has no block", "get_block")
        return Block(
            chain=self.chain,
            number=number,
            hash=result["blockhash"],
            parent_hash=result.get("previousBlockhash"),
            timestamp=result.get("blockTime") or 0,
            transactions=result.get("signatures", []),
        )

    def subscribe_mempool(self, poll_interval: float | None = None) -> Subscription[PendingTransaction]:
        raise self._invalid("Solana has no public mempool", "subscribe_mempool")
