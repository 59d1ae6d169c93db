"""Polling-backed asynchronous subscriptions."""

import asyncio
import contextlib
import logging
from collections.abc import Awaitable, Callable
from typing import Generic, TypeVar

from chain_gateway.core.errors import GatewayError

logger = logging.getLogger(__name__)

T = TypeVar("T")

_CLOSED = object()


class Subscription(Generic[T]):
    """
    Async iterator over items produced by a polling task.

    The producer calls ``poll()`` every ``interval_s`` seconds and queues the
    returned items. When the queue is full the oldest item is dropped.
    ``close()`` stops the producer and ends iteration once queued items are
    drained.

    Parameters
    ----------
    poll : Callable[[], Awaitable[list[T]]]
        Returns the items that appeared since the previous call
    interval_s : float
        Delay between polls
    maxsize : int
        Queue capacity
    name : str
        Label used in logs

    """

    def __init__(
        self,
        poll: Callable[[], Awaitable[list[T]]],
        interval_s: float,
        maxsize: int = 256,
        name: str = "subscription",
    ) -> None:
        self._poll = poll
        self.interval_s = interval_s
        self.name = name
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self._task: asyncio.Task | None = None
        self.closed = False
        self.dropped = 0

    def start(self) -> "Subscription[T]":
        if self._task is None:
            self._task = asyncio.create_task(self._produce(), name=self.name)
        return self

    async def _produce(self) -> None:
        while not self.closed:
            try:
                items = await self._poll()
            except GatewayError as e:
                logger.warning("%s poll failed: %s", self.name, e)
                items = []
            except Exception:
                # malformed node payloads surface as KeyError, TypeError and the like
                logger.exception("%s poll raised unexpectedly", self.name)
                items = []
            for item in items:
                self._put(item)
            await asyncio.sleep(self.interval_s)

    def _put(self, item: object) -> None:
        if self._queue.full():
            self._queue.get_nowait()
            self.dropped += 1
        self._queue.put_nowait(item)

    async def close(self) -> None:
        """Stop the producer; pending iterators finish after draining."""
        if self.closed:
            return
        self.closed = True
        if self._task is not None:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
        self._put(_CLOSED)

    def __aiter__(self) -> "Subscription[T]":
        return self

    async def __anext__(self) -> T:
        item = await self._queue.get()
        if item is _CLOSED:
            self._queue.put_nowait(_CLOSED)
            raise StopAsyncIteration
        return item

    async def __aenter__(self) -> "Subscription[T]":
        return self.start()

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()
