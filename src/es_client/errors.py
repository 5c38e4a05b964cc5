"""
Custom exceptions for the Elasticsearch bulk client.

Only transport-level failures are raised; any HTTP response, whatever its
status, is returned to the caller as a parsed BulkResponse.
"""

from __future__ import annotations

import httpx


class BulkClientError(Exception):
    """Base error for the bulk client."""

    pass


class TransportError(BulkClientError):
    """Connection refused, reset, DNS failure and other network errors."""

    def __init__(self, message: str, url: str | None = None):
        super().__init__(message)
        self.url = url


class TransportTimeout(TransportError):
    """Connect, read, write or pool timeout."""

    pass


def _timeout_ms(e: httpx.TimeoutException, timeout: httpx.Timeout) -> float | None:
    if isinstance(e, httpx.ConnectTimeout):
        return timeout.connect
    if isinstance(e, httpx.ReadTimeout):
        return timeout.read
    if isinstance(e, httpx.WriteTimeout):
        return timeout.write
    if isinstance(e, httpx.PoolTimeout):
        return timeout.pool
    return timeout.read


def map_transport_error(e: Exception, url: str, timeout: httpx.Timeout) -> BulkClientError:
    """Translate an httpx failure into the client's error taxonomy.

    Timeout text is kept in the form operators already grep for:
    ``SocketTimeoutException: 1,000 milliseconds timeout on connection <url>``.
    """
    if isinstance(e, httpx.TimeoutException):
        seconds = _timeout_ms(e, timeout)
        millis = int(round((seconds or 0) * 1000))
        return TransportTimeout(
            f"SocketTimeoutException: {millis:,} milliseconds timeout on connection {url}",
            url=url,
        )
    if isinstance(e, (httpx.TransportError, OSError)):
        return TransportError(f"{type(e).__name__}: {e or 'connection failed'} ({url})", url=url)
    return BulkClientError(str(e))
