"""JSON-RPC 2.0 transport over HTTP with failure classification."""

import itertools
import logging
from abc import ABC, abstractmethod
from typing import Any

import httpx

from chain_gateway.core.errors import ErrorKind, ProviderError
from chain_gateway.core.models import Provider

logger = logging.getLogger(__name__)

# JSON-RPC error codes
METHOD_NOT_FOUND = -32601
INVALID_PARAMS = -32602
INTERNAL_ERROR = -32603
LIMIT_EXCEEDED = -32005

_RATE_LIMIT_MARKERS = ("rate limit", "too many requests", "exceeded", "throttle", "capacity")
_TRANSIENT_MARKERS = ("timeout", "timed out", "busy", "unavailable", "try again")
_NOT_FOUND_MARKERS = ("was skipped", "not available for slot", "missing in long-term storage", "filter not found")
_EXECUTION_MARKERS = ("revert", "execution", "out of gas")
_REJECTION_MARKERS = ("insufficient funds", "nonce too low", "already known", "underpriced", "invalid")


class Transport(ABC):
    """Sends one request to one provider."""

    @abstractmethod
    async def call(self, provider: Provider, method: str, params: Any, timeout: float | None = None) -> Any:
        """
        Execute a single RPC call.

        Raises
        ------
        ProviderError
            Classified wire-level failure

        """

    async def close(self) -> None:
        """Release network resources."""
        return None


def classify_rpc_error(code: int | None, message: str) -> ErrorKind:
    """
    Classify a JSON-RPC error object.

    Parameters
    ----------
    code : int | None
        JSON-RPC error code
    message : str
        JSON-RPC error message

    Returns
    -------
    ErrorKind
        Failure classification

    """
    text = message.lower()
    if code == METHOD_NOT_FOUND or "method not found" in text or "not supported" in text:
        return ErrorKind.UNSUPPORTED
    if code == LIMIT_EXCEEDED or code == 429 or any(marker in text for marker in _RATE_LIMIT_MARKERS):
        return ErrorKind.RATE_LIMITED
    if any(marker in text for marker in _NOT_FOUND_MARKERS):
        return ErrorKind.NOT_FOUND
    if code == INVALID_PARAMS:
        return ErrorKind.INVALID_REQUEST
    if any(marker in text for marker in _EXECUTION_MARKERS):
        return ErrorKind.EXECUTION
    if any(marker in text for marker in _REJECTION_MARKERS):
        return ErrorKind.INVALID_REQUEST
    if code == INTERNAL_ERROR or any(marker in text for marker in _TRANSIENT_MARKERS):
        return ErrorKind.SERVER
    if code is not None and -32099 <= code <= -32000:
        return ErrorKind.SERVER
    return ErrorKind.INVALID_REQUEST


def classify_status(status_code: int) -> ErrorKind:
    """Classify a non-2xx HTTP status."""
    if status_code == 429:
        return ErrorKind.RATE_LIMITED
    if status_code >= 500:
        return ErrorKind.SERVER
    if status_code == 404:
        return ErrorKind.CONNECTION
    return ErrorKind.INVALID_REQUEST


class JsonRpcTransport(Transport):
    """
    JSON-RPC 2.0 over one shared ``httpx.AsyncClient``.

    Parameters
    ----------
    client : httpx.AsyncClient | None
        Shared client, created on first use when None
    timeout : float
        Default request timeout in seconds

    """

    def __init__(self, client: httpx.AsyncClient | None = None, timeout: float = 10.0) -> None:
        self._client = client
        self._owns_client = client is None
        self.timeout = timeout
        self._ids = itertools.count(1)

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout)
        return self._client

    async def call(self, provider: Provider, method: str, params: Any, timeout: float | None = None) -> Any:
        payload = {"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": params}
        headers = {"Content-Type": "application/json"}
        if provider.api_key:
            headers["Authorization"] = f"Bearer {provider.api_key}"

        try:
            response = await self.client.post(
                provider.url,
                json=payload,
                headers=headers,
                timeout=timeout if timeout is not None else self.timeout,
            )
            response.raise_for_status()
            body = response.json()
        except httpx.TimeoutException as e:
            msg = f"Request timeout: {e}"
            raise ProviderError(msg, ErrorKind.TIMEOUT, provider_id=provider.id) from e
        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            msg = f"HTTP error {status}: {e}"
            raise ProviderError(msg, classify_status(status), provider_id=provider.id, code=status) from e
        except httpx.HTTPError as e:
            msg = f"HTTP request failed: {e}"
            raise ProviderError(msg, ErrorKind.CONNECTION, provider_id=provider.id) from e
        except ValueError as e:
            msg = f"Malformed JSON response: {e}"
            raise ProviderError(msg, ErrorKind.SERVER, provider_id=provider.id) from e

        if not isinstance(body, dict):
            msg = "Unexpected JSON-RPC response shape"
            raise ProviderError(msg, ErrorKind.SERVER, provider_id=provider.id)

        error = body.get("error")
        if error is not None:
            code = error.get("code") if isinstance(error, dict) else None
            message = error.get("message", "") if isinstance(error, dict) else str(error)
            kind = classify_rpc_error(code, message)
            logger.debug("Provider %s returned error %s for %s: %s", provider.id, code, method, message)
            raise ProviderError(f"{method}: {message}", kind, provider_id=provider.id, code=code)

        if "result" not in body:
            msg = "JSON-RPC response has neither result nor error"
            raise ProviderError(msg, ErrorKind.SERVER, provider_id=provider.id)
        return body["result"]

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None
