"""Domain models for traces, spans, logs and dependency links."""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, Field

from core.config import DEFAULT_QUERY_LIMIT
from core.error_handling import InvalidQueryError
from core.time_utils import to_utc

_MAX_UINT64 = (1 << 64) - 1


@dataclass(frozen=True, order=True)
class TraceID:
    """128-bit trace identifier stored as a high/low pair of 64-bit halves."""
    high: int
    low: int

    def __post_init__(self):
        if not (0 <= self.high <= _MAX_UINT64 and 0 <= self.low <= _MAX_UINT64):
            raise ValueError(f"trace ID halves out of range: {self.high}, {self.low}")

    @classmethod
    def from_hex(cls, text: str) -> "TraceID":
        """Parse a hex trace ID of 1 to 32 characters.

        Raises:
            ValueError: if the text is empty, too long or not hexadecimal
        """
        text = text.strip()
        if not text or len(text) > 32:
            raise ValueError(f"invalid trace ID length: {text!r}")
        try:
            value = int(text, 16)
        except ValueError:
            raise ValueError(f"invalid trace ID: {text!r}") from None
        return cls(high=value >> 64, low=value & _MAX_UINT64)

    def __str__(self) -> str:
        return f"{self.high:016x}{self.low:016x}"


def span_id_from_hex(text: str) -> int:
    """Parse a hex span ID of 1 to 16 characters."""
    text = text.strip()
    if not text or len(text) > 16:
        raise ValueError(f"invalid span ID length: {text!r}")
    try:
        return int(text, 16)
    except ValueError:
        raise ValueError(f"invalid span ID: {text!r}") from None


def format_span_id(span_id: int) -> str:
    return f"{span_id:016x}"


class KeyValue(BaseModel):
    """A typed key/value pair used for span tags and log fields."""
    key: str
    value: Union[bool, int, float, str]

    @property
    def value_type(self) -> str:
        if isinstance(self.value, bool):
            return "bool"
        if isinstance(self.value, int):
            return "int64"
        if isinstance(self.value, float):
            return "float64"
        return "string"


class Log(BaseModel):
    """A timestamped event attached to a span."""
    timestamp: datetime
    fields: List[KeyValue] = Field(default_factory=list)


class SpanRef(BaseModel):
    ref_type: str = "child-of"
    trace_id: TraceID
    span_id: int


class Process(BaseModel):
    service_name: str
    tags: List[KeyValue] = Field(default_factory=list)


class Span(BaseModel):
    """One unit of work within a trace."""
    trace_id: TraceID
    span_id: int
    operation_name: str = ""
    references: List[SpanRef] = Field(default_factory=list)
    flags: int = 0
    start_time: datetime
    duration: timedelta = timedelta(0)
    tags: List[KeyValue] = Field(default_factory=list)
    logs: List[Log] = Field(default_factory=list)
    process: Process


class Trace(BaseModel):
    """Spans sharing one trace ID, in the order they were first seen."""
    spans: List[Span] = Field(default_factory=list)

    @property
    def trace_id(self) -> Optional[TraceID]:
        return self.spans[0].trace_id if self.spans else None


class DependencyLink(BaseModel):
    """Aggregated call edge between two services."""
    parent: str
    child: str
    call_count: int = Field(default=0, ge=0)


class TraceQueryParameters(BaseModel):
    """Structured trace search request."""
    service_name: str = ""
    operation_name: str = ""
    tags: Dict[str, str] = Field(default_factory=dict)
    start_time_min: Optional[datetime] = None
    start_time_max: Optional[datetime] = None
    duration_min: Optional[timedelta] = None
    duration_max: Optional[timedelta] = None
    num_traces: int = DEFAULT_QUERY_LIMIT

    def validate_query(self) -> None:
        """Check the parameters describe a bounded, consistent search.

        Raises:
            InvalidQueryError: on the first rule the parameters break
        """
        if not self.service_name:
            raise InvalidQueryError("service name must be set")
        if self.start_time_min is None:
            raise InvalidQueryError("start time minimum must be set")
        if self.start_time_max is not None and to_utc(self.start_time_max) < to_utc(self.start_time_min):
            raise InvalidQueryError("start time minimum is above maximum")
        if (
            self.duration_min is not None
            and self.duration_max is not None
            and self.duration_min > self.duration_max
        ):
            raise InvalidQueryError("duration minimum is above maximum")
        if self.num_traces < 0:
            raise InvalidQueryError("number of traces must not be negative")

    def describe(self) -> Dict[str, Any]:
        """Compact form for log lines."""
        return self.model_dump(exclude_defaults=True, mode="json")
