"""Retry policy with exponential backoff for pooled RPC calls."""

from enum import StrEnum

from chain_gateway.core.config import PoolSettings


class RetryState(StrEnum):
    """State of one pooled request."""

    ATTEMPTING = "attempting"
    RETRYING = "retrying"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class RetryConfig:
    """
    Configuration for retry behavior.

    Parameters
    ----------
    max_retries : int
        Maximum number of retry attempts after the first call
    base_delay : float
        Initial delay in seconds before first retry
    max_delay : float
        Maximum delay between retries
    exponential_base : float
        Base for exponential backoff calculation

    """

    def __init__(
        self,
        max_retries: int = 3,
        base_delay: float = 0.1,
        max_delay: float = 2.0,
        exponential_base: float = 2.0,
    ) -> None:
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.exponential_base = exponential_base

    @classmethod
    def from_settings(cls, settings: PoolSettings) -> "RetryConfig":
        return cls(
            max_retries=settings.max_retries,
            base_delay=settings.base_delay_s,
            max_delay=settings.max_delay_s,
            exponential_base=settings.exponential_base,
        )

    def get_delay(self, attempt: int) -> float:
        """
        Calculate delay for a given retry attempt using exponential backoff.

        Parameters
        ----------
        attempt : int
            Current attempt number (0-indexed)

        Returns
        -------
        float
            Delay in seconds

        """
        delay = self.base_delay * (self.exponential_base**attempt)
        return min(delay, self.max_delay)


class RetryTracker:
    """
    Bounded attempt counter driving the retry state machine.

    Transitions: attempting -> retrying -> attempting ... -> succeeded | failed.
    """

    def __init__(self, config: RetryConfig) -> None:
        self.config = config
        self.state = RetryState.ATTEMPTING
        self.retries = 0
        self.attempts = 0

    def start_attempt(self) -> None:
        self.attempts += 1
        self.state = RetryState.ATTEMPTING

    def schedule_retry(self) -> float | None:
        """
        Move to ``retrying`` and return the backoff delay.

        Returns
        -------
        float | None
            Delay before the next attempt, None when retries are exhausted
            (the tracker is then ``failed``)

        """
        if self.retries >= self.config.max_retries:
            self.state = RetryState.FAILED
            return None
        delay = self.config.get_delay(self.retries)
        self.retries += 1
        self.state = RetryState.RETRYING
        return delay

    def succeed(self) -> None:
        self.state = RetryState.SUCCEEDED

    def fail(self) -> None:
        self.state = RetryState.FAILED
