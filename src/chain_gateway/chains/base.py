"""Base class for chain adapters."""

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from decimal import Decimal
from typing import Any, ClassVar

from chain_gateway.chains.subscription import Subscription
from chain_gateway.core.config import CacheSettings, ChainSettings
from chain_gateway.core.errors import GatewayError, InvalidRequest, NotFound, ProviderError, translate_provider_error
from chain_gateway.core.models import (
    NATIVE,
    Balance,
    Block,
    ChainFamily,
    ChainState,
    GasPrice,
    PendingTransaction,
    Token,
    Transaction,
    TransactionOutcome,
    TransactionRequest,
    TxStatus,
)
from chain_gateway.rpc.cache import ResponseCache
from chain_gateway.rpc.pool import ConnectionPool

logger = logging.getLogger(__name__)

MAX_BLOCK_BACKFILL = 5


def to_base_units(amount: Decimal | int | str, decimals: int) -> int:
    """Convert a token amount to integer base units (truncating)."""
    return int(Decimal(str(amount)).scaleb(decimals))


def from_base_units(raw: int, decimals: int) -> Decimal:
    """Convert integer base units to a token amount."""
    return Decimal(raw).scaleb(-decimals)


class BaseChainAdapter(ABC):
    """
    Uniform read/write operations for one chain.

    Subclasses speak one wire family. Every read goes through the response
    cache; writes never do. Failures leave the adapter as typed
    ``GatewayError`` subclasses carrying chain and operation context.

    Parameters
    ----------
    chain : str
        Chain name
    settings : ChainSettings
        Chain description from configuration
    pool : ConnectionPool
        Pool executing RPC calls
    cache : ResponseCache
        Shared response cache
    cache_settings : CacheSettings | None
        TTLs per method class

    """

    family: ClassVar[ChainFamily]

    def __init__(
        self,
        chain: str,
        settings: ChainSettings,
        pool: ConnectionPool,
        cache: ResponseCache,
        cache_settings: CacheSettings | None = None,
    ) -> None:
        self.chain = chain
        self.settings = settings
        self.pool = pool
        self.cache = cache
        self.ttls = dict((cache_settings or CacheSettings()).ttl)
        self.ttls.setdefault("block", settings.block_time_s)
        self._state: ChainState | None = None

    @property
    def native_token(self) -> Token:
        return Token(
            address=NATIVE,
            symbol=self.settings.native_symbol,
            decimals=self.settings.native_decimals,
            name=self.settings.native_symbol,
        )

    def ttl(self, ttl_class: str) -> float:
        if ttl_class == "block":
            return self.settings.block_time_s
        return self.ttls[ttl_class]

    async def _rpc(self, method: str, params: Any = None) -> Any:
        try:
            return await self.pool.execute(self.chain, method, params)
        except ProviderError as e:
            raise translate_provider_error(e, chain=self.chain, operation=method) from e

    async def _cached(self, method: str, params: Any, ttl_class: str) -> Any:
        """Read through the response cache."""
        key = self.cache.make_key(self.chain, method, params)
        return await self.cache.get_or_fetch(key, self.ttl(ttl_class), lambda: self._rpc(method, params))

    def _invalid(self, message: str, operation: str) -> InvalidRequest:
        return InvalidRequest(message, chain=self.chain, operation=operation)

    def _not_found(self, message: str, operation: str) -> NotFound:
        return NotFound(message, chain=self.chain, operation=operation)

    def resolve_token(self, token: str | None) -> str:
        """Map None, ``"native"`` or a configured symbol to a token address."""
        if token is None or token.lower() == NATIVE:
            return NATIVE
        return self.settings.resolve_token(token)

    # -- addresses -------------------------------------------------------

    @abstractmethod
    def is_valid_address(self, address: str) -> bool:
        """Check an address in the chain's native format."""

    @abstractmethod
    def normalize_address(self, address: str) -> str:
        """
        Canonical form of an address.

        Raises
        ------
        InvalidRequest
            If the address is malformed
        """

    # -- reads -------------------------------------------------------------

    @abstractmethod
    async def get_balance(self, address: str, token: str | None = None) -> Balance:
        """Balance of ``address`` in the native asset or ``token``."""

    @abstractmethod
    async def get_token_info(self, token: str) -> Token:
        """Symbol and decimals of a token."""

    @abstractmethod
    async def estimate_gas(self, tx: TransactionRequest) -> int:
        """Gas (or compute units) the transaction is expected to consume."""

    @abstractmethod
    async def get_gas_price(self) -> GasPrice:
        """Current fee level."""

    @abstractmethod
    def gas_cost_native(self, gas: GasPrice, units: int) -> Decimal:
        """Fee in native token units for ``units`` of gas at the given fee level."""

    async def get_transaction(self, tx_hash: str) -> Transaction:
        """
        Look up a transaction and its inclusion status.

        Raises
        ------
        NotFound
            If no node knows the transaction
        """
        key = self.cache.make_key(self.chain, "get_transaction", tx_hash)
        return await self.cache.get_or_fetch(key, self.ttl("transaction"), lambda: self._fetch_transaction(tx_hash))

    @abstractmethod
    async def _fetch_transaction(self, tx_hash: str) -> Transaction:
        """Uncached transaction lookup."""

    @abstractmethod
    async def get_latest_block(self) -> Block:
        """Most recent block header."""

    @abstractmethod
    async def get_block(self, number: int) -> Block:
        """Block header by number (slot on Solana)."""

    @abstractmethod
    async def get_block_number(self) -> int:
        """Height of the chain head."""

    # -- writes ------------------------------------------------------------

    @abstractmethod
    async def send_transaction(self, signed_tx: str) -> str:
        """Broadcast a signed transaction and return its hash."""

    # -- derived operations --------------------------------------------------

    async def wait_for_transaction(
        self,
        tx_hash: str,
        confirmations: int = 1,
        timeout: float = 120.0,
        poll_interval: float | None = None,
    ) -> TransactionOutcome:
        """
        Poll until a transaction reaches the wanted confirmations, fails, or the caller times out.

        Parameters
        ----------
        tx_hash : str
            Transaction hash or signature
        confirmations : int
            Confirmations required for ``confirmed``
        timeout : float
            Overall wait in seconds, independent of RPC timeouts
        poll_interval : float | None
            Delay between polls, half the block time when None

        Returns
        -------
        TransactionOutcome
            ``confirmed``, ``failed`` or ``timed_out``

        """
        if confirmations < 1:
            raise self._invalid("confirmations must be at least 1", "wait_for_transaction")
        interval = poll_interval if poll_interval is not None else max(self.settings.block_time_s / 2, 0.2)
        started = time.monotonic()
        latest: Transaction | None = None

        def outcome(status: TxStatus) -> TransactionOutcome:
            return TransactionOutcome(
                chain=self.chain,
                hash=tx_hash,
                status=status,
                confirmations=latest.confirmations if latest else 0,
                transaction=latest,
                elapsed_s=time.monotonic() - started,
            )

        try:
            async with asyncio.timeout(timeout):
                while True:
                    try:
                        latest = await self._fetch_transaction(tx_hash)
                    except NotFound:
                        latest = None
                    except GatewayError as e:
                        logger.debug("Polling %s on %s failed: %s", tx_hash, self.chain, e)
                    if latest is not None:
                        if latest.success is False:
                            return outcome(TxStatus.FAILED)
                        if latest.block_number is not None and latest.confirmations >= confirmations:
                            return outcome(TxStatus.CONFIRMED)
                    await asyncio.sleep(interval)
        except TimeoutError:
            return outcome(TxStatus.TIMED_OUT)

    async def get_chain_state(self) -> ChainState:
        """Per-chain snapshot, refreshed lazily once it is a block old."""
        state = self._state
        if state is not None and time.monotonic() - state.updated_at < self.settings.block_time_s:
            return state
        block_number, gas = await asyncio.gather(self.get_block_number(), self.get_gas_price())
        self._state = ChainState(chain=self.chain, latest_block=block_number, base_gas_price=gas.gas_price)
        return self._state

    def subscribe_blocks(self, poll_interval: float | None = None) -> Subscription[Block]:
        """
        Subscribe to new blocks.

        Returns a started ``Subscription`` yielding each new block once, in
        order. Gaps larger than a few blocks are skipped.
        """
        last_seen: list[int | None] = [None]

        async def poll() -> list[Block]:
            head = await self.get_block_number()
            previous = last_seen[0]
            if previous is None:
                last_seen[0] = head
                return [await self.get_latest_block()]
            if head <= previous:
                return []
            blocks = []
            for number in range(max(previous + 1, head - MAX_BLOCK_BACKFILL + 1), head + 1):
                try:
                    blocks.append(await self.get_block(number))
                except NotFound:
                    continue
            last_seen[0] = head
            return blocks

        interval = poll_interval if poll_interval is not None else self.settings.block_time_s
        return Subscription(poll, interval, name=f"{self.chain}-blocks").start()

    @abstractmethod
    def subscribe_mempool(self, poll_interval: float | None = None) -> Subscription[PendingTransaction]:
        """
        Subscribe to pending transactions.

        Raises
        ------
        InvalidRequest
            If the chain has no public mempool
        """
