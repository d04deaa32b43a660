"""
Error taxonomy for the market-data core.

Every failure surfaced by the fetcher, the caches, the planner, and the
remote transport is a StockDataError subclass tagged with an ErrorKind, so
the remote server can carry the kind across the process boundary and the
remote client can raise the same class on the other side.
"""

from enum import Enum
from typing import Any, Optional


class ErrorKind(str, Enum):
    """Kinds of failure, independent of where they were raised."""

    BAD_REQUEST = "bad_request"
    UPSTREAM = "upstream"
    MALFORMED_RESPONSE = "malformed_response"
    MALFORMED_DATE = "malformed_date"
    NOT_FOUND = "not_found"
    CACHE_IO = "cache_io"
    CANCELLED = "cancelled"


class StockDataError(Exception):
    """Base exception for all market-data errors."""

    kind: ErrorKind = ErrorKind.BAD_REQUEST

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class BadRequestError(StockDataError):
    """Raised when the caller supplied an invalid request. No I/O is performed."""

    kind = ErrorKind.BAD_REQUEST


class UpstreamError(StockDataError):
    """Raised for non-2xx upstream responses or transport failures."""

    kind = ErrorKind.UPSTREAM

    def __init__(self, message: str, status: int = 0, body: str = ""):
        self.status = status
        self.body = body
        if body:
            message = f"{message}: {body}"
        super().__init__(message)


class MalformedResponseError(StockDataError):
    """Raised when an upstream payload can't be decoded."""

    kind = ErrorKind.MALFORMED_RESPONSE


class MalformedDateError(StockDataError):
    """Raised when a date or time in an upstream payload can't be parsed."""

    kind = ErrorKind.MALFORMED_DATE


class NotFoundError(StockDataError):
    """Upstream omitted a requested symbol. Reported per symbol, not raised by the planner."""

    kind = ErrorKind.NOT_FOUND


class CacheIOError(StockDataError):
    """
    Raised when a cache snapshot can't be read or written.

    When raised after a successful fetch, `response` holds the result the
    caller would otherwise have received; the in-memory cache is up to date.
    """

    kind = ErrorKind.CACHE_IO

    def __init__(self, message: str, response: Optional[Any] = None):
        self.response = response
        super().__init__(message)


class CancelledError(StockDataError):
    """Raised by the remote client when the server reports a cancelled call."""

    kind = ErrorKind.CANCELLED


_ERRORS_BY_KIND: dict[ErrorKind, type[StockDataError]] = {
    ErrorKind.BAD_REQUEST: BadRequestError,
    ErrorKind.UPSTREAM: UpstreamError,
    ErrorKind.MALFORMED_RESPONSE: MalformedResponseError,
    ErrorKind.MALFORMED_DATE: MalformedDateError,
    ErrorKind.NOT_FOUND: NotFoundError,
    ErrorKind.CACHE_IO: CacheIOError,
    ErrorKind.CANCELLED: CancelledError,
}


def error_for_kind(kind: str, message: str) -> StockDataError:
    """Build the exception matching an error kind name. Unknown kinds become UpstreamError."""
    try:
        error_kind = ErrorKind(kind)
    except ValueError:
        return UpstreamError(message)
    return _ERRORS_BY_KIND[error_kind](message)
