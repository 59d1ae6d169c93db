"""Per-provider rate limiting and concurrency gates."""

import asyncio
import time
from collections import deque
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager


class RateLimiter:
    """
    Sliding-window log rate limiter.

    Admits at most ``rate`` acquisitions in any window of ``period`` seconds,
    measured on admission timestamps.

    Parameters
    ----------
    rate : float
        Maximum admissions per window. Fractional rates above 1 are floored;
        rates below 1 admit one request per stretched window of
        ``period / rate`` seconds
    period : float
        Window length in seconds
    clock : Callable[[], float]
        Monotonic time source

    """

    def __init__(self, rate: float, period: float = 1.0, clock: Callable[[], float] = time.monotonic) -> None:
        if rate <= 0:
            msg = "rate must be positive"
            raise ValueError(msg)
        if rate < 1:
            self.capacity = 1
            self.period = period / rate
        else:
            self.capacity = int(rate)
            self.period = period
        self._clock = clock
        self._admitted: deque[float] = deque()
        self._lock = asyncio.Lock()

    def _prune(self, now: float) -> None:
        while self._admitted and now - self._admitted[0] >= self.period:
            self._admitted.popleft()

    async def acquire(self) -> None:
        """Wait until a slot in the window is free and claim it."""
        async with self._lock:
            while True:
                now = self._clock()
                self._prune(now)
                if len(self._admitted) < self.capacity:
                    self._admitted.append(now)
                    return
                await asyncio.sleep(self._admitted[0] + self.period - now)

    def try_acquire(self) -> bool:
        """Claim a slot without waiting."""
        if self._lock.locked():
            return False
        now = self._clock()
        self._prune(now)
        if len(self._admitted) < self.capacity:
            self._admitted.append(now)
            return True
        return False

    @property
    def in_window(self) -> int:
        self._prune(self._clock())
        return len(self._admitted)


class ProviderGate:
    """
    Concurrency cap plus rate limiter guarding one provider.

    Parameters
    ----------
    max_concurrency : int
        Maximum in-flight requests
    rate_limit_rps : float
        Maximum requests admitted per second

    """

    def __init__(self, max_concurrency: int, rate_limit_rps: float) -> None:
        self.max_concurrency = max_concurrency
        self._semaphore = asyncio.Semaphore(max_concurrency)
        self.limiter = RateLimiter(rate_limit_rps)
        self.in_flight = 0

    @asynccontextmanager
    async def lease(self, timeout: float | None = None) -> AsyncIterator[None]:
        """
        Hold one connection slot for the duration of the block.

        Parameters
        ----------
        timeout : float | None
            Maximum time to wait for the slot and rate token

        Raises
        ------
        TimeoutError
            If the slot could not be obtained in time

        """
        async with asyncio.timeout(timeout):
            await self._semaphore.acquire()
            try:
                await self.limiter.acquire()
            except BaseException:
                self._semaphore.release()
                raise
        self.in_flight += 1
        try:
            yield
        finally:
            self.in_flight -= 1
            self._semaphore.release()
