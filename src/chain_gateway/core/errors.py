"""Typed, chain-agnostic error hierarchy surfaced to gateway callers."""

from enum import StrEnum


class ErrorKind(StrEnum):
    """Classification of a low-level provider failure."""

    TIMEOUT = "timeout"
    CONNECTION = "connection"
    SERVER = "server"
    RATE_LIMITED = "rate_limited"
    INVALID_REQUEST = "invalid_request"
    NOT_FOUND = "not_found"
    UNSUPPORTED = "unsupported"
    EXECUTION = "execution"


RETRIABLE_KINDS = frozenset(
    {
        ErrorKind.TIMEOUT,
        ErrorKind.CONNECTION,
        ErrorKind.SERVER,
        ErrorKind.RATE_LIMITED,
    }
)


class GatewayError(Exception):
    """
    Base class for every error raised to gateway callers.

    Parameters
    ----------
    message : str
        Human readable description
    chain : str | None
        Chain the failing operation targeted
    operation : str | None
        Logical operation or RPC method name
    providers_tried : list[str] | None
        Provider ids that were attempted before giving up
    attempts : int
        Number of attempts made

    """

    def __init__(
        self,
        message: str,
        *,
        chain: str | None = None,
        operation: str | None = None,
        providers_tried: list[str] | None = None,
        attempts: int = 0,
    ) -> None:
        super().__init__(message)
        self.chain = chain
        self.operation = operation
        self.providers_tried = list(providers_tried or [])
        self.attempts = attempts

    def context(self) -> dict:
        """Return the structured context of the error."""
        return {
            "error": type(self).__name__,
            "message": str(self),
            "chain": self.chain,
            "operation": self.operation,
            "providers_tried": self.providers_tried,
            "attempts": self.attempts,
        }


class RequestTimeout(GatewayError, TimeoutError):
    """The operation did not complete within its deadline."""


class RateLimited(GatewayError):
    """Every usable provider rejected the request for rate-limit reasons."""


class Unavailable(GatewayError):
    """No provider could serve the request."""


class ChainUnavailable(Unavailable):
    """Every provider configured for the chain has an open circuit or is disabled."""


class AllProvidersUnavailable(Unavailable):
    """All candidate providers and retries were exhausted."""


class InvalidRequest(GatewayError):
    """Malformed parameters, unsupported method, or a node-side rejection."""


class NotFound(GatewayError):
    """The requested object (transaction, block, token) does not exist."""


class ProviderError(Exception):
    """
    Wire-level failure of one provider call.

    Raised by transports and consumed by the connection pool and chain
    adapters; never surfaced to gateway callers.

    Parameters
    ----------
    message : str
        Description of the failure
    kind : ErrorKind
        Failure classification
    provider_id : str | None
        Provider that produced the failure
    code : int | None
        HTTP status or JSON-RPC error code when available

    """

    def __init__(
        self,
        message: str,
        kind: ErrorKind,
        *,
        provider_id: str | None = None,
        code: int | None = None,
    ) -> None:
        super().__init__(message)
        self.kind = kind
        self.provider_id = provider_id
        self.code = code
        self.latency_ms: float | None = None

    @property
    def retriable(self) -> bool:
        """Whether the failure is transient and may succeed on another attempt."""
        return self.kind in RETRIABLE_KINDS


class VenueError(Exception):
    """Exception raised when a DEX venue cannot produce a quote."""

    def __init__(self, message: str, venue: str | None = None) -> None:
        super().__init__(message)
        self.venue = venue


def translate_provider_error(
    error: ProviderError,
    *,
    chain: str | None = None,
    operation: str | None = None,
    providers_tried: list[str] | None = None,
    attempts: int = 0,
) -> GatewayError:
    """
    Map a wire-level provider error onto the public error hierarchy.

    Parameters
    ----------
    error : ProviderError
        Error produced by a transport
    chain : str | None
        Chain name for context
    operation : str | None
        Operation name for context
    providers_tried : list[str] | None
        Provider ids attempted
    attempts : int
        Attempts made

    Returns
    -------
    GatewayError
        Typed error suitable for callers

    """
    context = {
        "chain": chain,
        "operation": operation,
        "providers_tried": providers_tried or ([error.provider_id] if error.provider_id else []),
        "attempts": attempts,
    }
    message = str(error)
    if error.kind == ErrorKind.TIMEOUT:
        return RequestTimeout(message, **context)
    if error.kind == ErrorKind.RATE_LIMITED:
        return RateLimited(message, **context)
    if error.kind == ErrorKind.NOT_FOUND:
        return NotFound(message, **context)
    if error.kind in (ErrorKind.CONNECTION, ErrorKind.SERVER):
        return Unavailable(message, **context)
    return InvalidRequest(message, **context)
