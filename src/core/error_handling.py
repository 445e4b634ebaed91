"""Error types raised by the trace reader and their classification.

Build, execution and decode failures each have their own exception so
callers can tell a missing trace apart from a broken query or a bad
response.
"""

from enum import Enum
from typing import Optional, Tuple


class ReaderError(Exception):
    """Base class for all trace reader errors."""


class QueryBuildError(ReaderError, ValueError):
    """A query builder was called with an invalid or empty argument."""


class InvalidQueryError(ReaderError, ValueError):
    """Trace search parameters failed validation."""


class QueryExecutionError(ReaderError):
    """The query service failed or rejected the query."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class DecodeError(ReaderError):
    """The query response could not be mapped onto domain objects."""


class ConsistencyError(DecodeError):
    """The response contradicts what the query guarantees."""


class TraceNotFoundError(ReaderError):
    """No rows matched a single-trace lookup."""

    def __init__(self, trace_id=None):
        message = "trace not found" if trace_id is None else f"trace not found: {trace_id}"
        super().__init__(message)
        self.trace_id = trace_id


class ErrorType(Enum):
    """Categories of reader errors surfaced to API callers."""
    NOT_FOUND = "not_found"
    INVALID_REQUEST = "invalid_request"
    UNREACHABLE = "unreachable"
    UNAUTHORIZED = "unauthorized"
    QUERY_REJECTED = "query_rejected"
    DECODE = "decode"
    INTERNAL = "internal"


_STATUS_BY_TYPE = {
    ErrorType.NOT_FOUND: 404,
    ErrorType.INVALID_REQUEST: 400,
    ErrorType.UNREACHABLE: 502,
    ErrorType.UNAUTHORIZED: 502,
    ErrorType.QUERY_REJECTED: 500,
    ErrorType.DECODE: 500,
    ErrorType.INTERNAL: 500,
}


class ReaderErrorClassifier:
    """Maps exceptions onto error types, HTTP statuses and readable messages."""

    @staticmethod
    def classify(error: Exception) -> ErrorType:
        if isinstance(error, TraceNotFoundError):
            return ErrorType.NOT_FOUND
        if isinstance(error, (InvalidQueryError, QueryBuildError)):
            return ErrorType.INVALID_REQUEST
        if isinstance(error, DecodeError):
            return ErrorType.DECODE
        if isinstance(error, QueryExecutionError):
            if error.status_code in (401, 403):
                return ErrorType.UNAUTHORIZED
            if error.status_code is None:
                return ErrorType.UNREACHABLE
            return ErrorType.QUERY_REJECTED
        return ErrorType.INTERNAL

    @staticmethod
    def status_code(error: Exception) -> int:
        return _STATUS_BY_TYPE[ReaderErrorClassifier.classify(error)]

    @staticmethod
    def describe(error: Exception, url: Optional[str] = None) -> Tuple[ErrorType, str]:
        """Return the error type and a message suitable for an API response."""
        error_type = ReaderErrorClassifier.classify(error)
        error_msg = str(error)

        if error_type is ErrorType.UNREACHABLE and url:
            if "nodename nor servname provided" in error_msg or "Name or service not known" in error_msg:
                error_msg = f"Query service not reachable at {url}. Check INFLUX_URL."
            elif "Connection refused" in error_msg:
                error_msg = f"Query service refused connection at {url}. Check that it is running."
        return error_type, error_msg
