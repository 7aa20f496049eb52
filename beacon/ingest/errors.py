"""Retailer error taxonomy.

Errors are classified the same way for every retailer, from either the HTTP
status of a response or the transport exception raised by httpx.
"""

from __future__ import annotations

from enum import Enum
from typing import Optional

import httpx


class ErrorType(str, Enum):
    NETWORK = "NETWORK"
    RATE_LIMIT = "RATE_LIMIT"
    AUTH = "AUTH"
    PARSING = "PARSING"
    NOT_FOUND = "NOT_FOUND"
    SERVER_ERROR = "SERVER_ERROR"
    BLOCKED = "BLOCKED"


class RetailerError(Exception):
    """Raised by retailer adapters; carries enough context for retry decisions."""

    def __init__(
        self,
        message: str,
        retailer_id: str,
        error_type: ErrorType,
        status_code: Optional[int] = None,
        retryable: bool = False,
    ):
        super().__init__(message)
        self.retailer_id = retailer_id
        self.error_type = error_type
        self.status_code = status_code
        self.retryable = retryable

    def __repr__(self) -> str:
        return (
            f"RetailerError({self.error_type.value}, retailer={self.retailer_id}, "
            f"status={self.status_code}, retryable={self.retryable}, msg={self.args[0]!r})"
        )


def classify_status(
    status_code: int,
    retailer_id: str,
    integration_type: str,
) -> RetailerError:
    """
    Map an HTTP error status to a RetailerError.

    Args:
        status_code: HTTP status (>= 400)
        retailer_id: Retailer the response came from
        integration_type: api, affiliate or scraping

    Returns:
        RetailerError describing the failure
    """
    if status_code == 429:
        return RetailerError("Rate limit exceeded", retailer_id, ErrorType.RATE_LIMIT, 429, True)

    if status_code == 401:
        return RetailerError("Authentication failed", retailer_id, ErrorType.AUTH, 401, False)

    if status_code == 403:
        if integration_type == "scraping":
            return RetailerError(
                "Access forbidden - possible bot detection",
                retailer_id, ErrorType.BLOCKED, 403, False,
            )
        return RetailerError("Authentication failed", retailer_id, ErrorType.AUTH, 403, False)

    if status_code in (404, 410):
        return RetailerError(
            f"Resource not found (HTTP {status_code})",
            retailer_id, ErrorType.NOT_FOUND, status_code, False,
        )

    if status_code >= 500:
        return RetailerError(
            f"Server error (HTTP {status_code})",
            retailer_id, ErrorType.SERVER_ERROR, status_code, True,
        )

    return RetailerError(
        f"Unexpected HTTP {status_code}",
        retailer_id, ErrorType.SERVER_ERROR, status_code, False,
    )


def classify_exception(exc: Exception, retailer_id: str) -> RetailerError:
    """Map a transport exception to a RetailerError (timeouts, resets, DNS)."""
    if isinstance(exc, RetailerError):
        return exc
    if isinstance(exc, httpx.TimeoutException):
        return RetailerError(f"Request timed out: {exc}", retailer_id, ErrorType.NETWORK, None, True)
    if isinstance(exc, (httpx.NetworkError, httpx.RemoteProtocolError, httpx.ProxyError)):
        return RetailerError(f"Network error: {exc}", retailer_id, ErrorType.NETWORK, None, True)
    if isinstance(exc, httpx.HTTPStatusError):
        return classify_status(exc.response.status_code, retailer_id, "api")
    return RetailerError(f"Request failed: {exc}", retailer_id, ErrorType.SERVER_ERROR, None, True)
