"""HTTP transport used by the wire-format connectors.

``send`` returns ``(status_code, body)`` whenever the processor answered,
whatever the status. Connection-level failures raise a ``TransportError``
that records whether the request may already have reached the processor.
"""

import logging
from typing import Dict, Optional, Tuple

import httpx

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30.0

# Failures raised before any request bytes left this process.
_NOT_SENT_ERRORS = (
    httpx.ConnectError,
    httpx.ConnectTimeout,
    httpx.PoolTimeout,
    httpx.ProxyError,
    httpx.UnsupportedProtocol,
    httpx.LocalProtocolError,
)


class TransportError(ConnectionError):
    """The processor could not be reached or its answer was lost."""

    may_have_applied = True

    def __init__(
        self,
        message: str,
        may_have_applied: Optional[bool] = None,
        original_error: Optional[Exception] = None,
    ):
        super().__init__(message)
        if may_have_applied is not None:
            self.may_have_applied = may_have_applied
        self.original_error = original_error


class ConnectionFailedError(TransportError):
    """Nothing was sent; the processor cannot have applied the request."""

    may_have_applied = False


class ResponseInterruptedError(TransportError):
    """The request may have reached the processor but no answer arrived."""

    may_have_applied = True


class HttpTransport:
    """Thin wrapper over ``httpx.Client`` that classifies network failures."""

    def __init__(self, timeout: float = DEFAULT_TIMEOUT, client: Optional[httpx.Client] = None):
        self._client = client or httpx.Client(timeout=timeout)

    def send(
        self,
        method: str,
        url: str,
        body: Optional[str] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> Tuple[int, str]:
        try:
            response = self._client.request(method, url, content=body, headers=headers)
        except _NOT_SENT_ERRORS as e:
            logger.warning(f"Connection to {url} failed before sending: {type(e).__name__}")
            raise ConnectionFailedError(f"Failed to connect to {url}: {e}", original_error=e) from e
        except httpx.TransportError as e:
            logger.warning(f"Request to {url} interrupted after sending: {type(e).__name__}")
            raise ResponseInterruptedError(
                f"No complete response from {url}: {e}", original_error=e
            ) from e
        return response.status_code, response.text

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> "HttpTransport":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()
