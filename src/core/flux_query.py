"""Flux query builders for the trace reader.

Each query is a pipeline of stages (source, range, filter, reshape,
project) joined with ``|>``. Every user-supplied string goes through
``quote()`` so it can only ever appear inside a string literal.
"""

from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from typing import Dict, Iterable, List, Optional

from core.config import (
    DURATION_KEY,
    FIELD_COLUMN,
    MEASUREMENT_COLUMN,
    OPERATION_NAME_KEY,
    REFERENCES_KEY,
    SERVICE_NAME_KEY,
    SPAN_ID_KEY,
    TIME_COLUMN,
    TRACE_ID_KEY,
    VALUE_COLUMN,
)
from core.error_handling import QueryBuildError
from core.models import TraceID, TraceQueryParameters
from core.time_utils import format_rfc3339, timedelta_to_nanoseconds, to_utc

_ESCAPES = {
    "\\": "\\\\",
    '"': '\\"',
    "\n": "\\n",
    "\r": "\\r",
    "\t": "\\t",
}


def quote(value: str) -> str:
    """Render a Flux string literal."""
    escaped = "".join(_ESCAPES.get(ch, ch) for ch in value)
    # "${" starts interpolation inside Flux strings
    escaped = escaped.replace("${", "\\${")
    return f'"{escaped}"'


def column(name: str) -> str:
    """Row accessor for a column whose name may not be a valid identifier."""
    return f"r[{quote(name)}]"


def _require(**values: str) -> None:
    for name, value in values.items():
        if not value:
            raise QueryBuildError(f"{name} must not be empty")


def _pipeline(source: str, stages: Iterable[str]) -> str:
    return "\n  |> ".join([source, *stages]) + "\n"


def _range(start: datetime, stop: Optional[datetime] = None) -> str:
    if stop is None:
        return f"range(start: {format_rfc3339(start)})"
    if to_utc(stop) < to_utc(start):
        raise QueryBuildError("range stop is before start")
    return f"range(start: {format_rfc3339(start)}, stop: {format_rfc3339(stop)})"


def _pivot_fields() -> str:
    return (
        f"pivot(rowKey: [{quote(TIME_COLUMN)}], columnKey: [{quote(FIELD_COLUMN)}], "
        f"valueColumn: {quote(VALUE_COLUMN)})"
    )


def _any_of(expressions: List[str]) -> str:
    if len(expressions) == 1:
        return expressions[0]
    return "(" + " or ".join(expressions) + ")"


def build_service_list_query(bucket: str, measurement: str, tag_key: str) -> str:
    """Query listing every value of ``tag_key`` seen in ``measurement``."""
    _require(bucket=bucket, measurement=measurement, tag_key=tag_key)
    return (
        'import "influxdata/influxdb/v1"\n'
        f"v1.measurementTagValues(bucket: {quote(bucket)}, "
        f"measurement: {quote(measurement)}, tag: {quote(tag_key)})\n"
    )


def build_operation_list_query(
    bucket: str,
    measurement: str,
    tag_key: str,
    service_filter_key: str,
    service_name: str,
) -> str:
    """Query listing values of ``tag_key`` on rows where ``service_filter_key`` equals ``service_name``."""
    _require(bucket=bucket, measurement=measurement, tag_key=tag_key, service_filter_key=service_filter_key)
    return (
        'import "influxdata/influxdb/v1"\n'
        f"v1.tagValues(bucket: {quote(bucket)}, tag: {quote(tag_key)}, "
        f"predicate: (r) => r.{MEASUREMENT_COLUMN} == {quote(measurement)} "
        f"and {column(service_filter_key)} == {quote(service_name)})\n"
    )


def build_dependency_query(bucket: str, measurement: str, start: datetime, stop: datetime) -> str:
    """Query producing one row per span with its references and service name."""
    _require(bucket=bucket, measurement=measurement)
    stages = [
        _range(start, stop),
        f"filter(fn: (r) => r.{MEASUREMENT_COLUMN} == {quote(measurement)} and "
        f"(r.{FIELD_COLUMN} == {quote(SPAN_ID_KEY)} or r.{FIELD_COLUMN} == {quote(REFERENCES_KEY)}))",
        _pivot_fields(),
        "group()",
        f"keep(columns: [{quote(SPAN_ID_KEY)}, {quote(REFERENCES_KEY)}, {quote(SERVICE_NAME_KEY)}])",
    ]
    return _pipeline(f"from(bucket: {quote(bucket)})", stages)


@dataclass(frozen=True)
class FluxTraceQuery:
    """Builder for the two trace queries: trace-ID search and trace fetch."""
    bucket: str
    span_measurement: str
    log_measurement: str
    start_time_min: datetime
    start_time_max: Optional[datetime] = None
    service_name: str = ""
    operation_name: str = ""
    tags: Dict[str, str] = field(default_factory=dict)
    duration_min: Optional[timedelta] = None
    duration_max: Optional[timedelta] = None
    num_traces: int = 0

    @classmethod
    def from_parameters(
        cls,
        bucket: str,
        span_measurement: str,
        log_measurement: str,
        params: TraceQueryParameters,
    ) -> "FluxTraceQuery":
        if params.start_time_min is None:
            raise QueryBuildError("start time minimum must be set")
        return cls(
            bucket=bucket,
            span_measurement=span_measurement,
            log_measurement=log_measurement,
            start_time_min=params.start_time_min,
            start_time_max=params.start_time_max,
            service_name=params.service_name,
            operation_name=params.operation_name,
            tags=dict(params.tags),
            duration_min=params.duration_min,
            duration_max=params.duration_max,
            num_traces=params.num_traces,
        )

    def with_start_time_max(self, start_time_max: Optional[datetime]) -> "FluxTraceQuery":
        return replace(self, start_time_max=start_time_max)

    def _source(self) -> str:
        _require(bucket=self.bucket, span_measurement=self.span_measurement)
        return f"from(bucket: {quote(self.bucket)})"

    def build_trace_query(self, trace_ids: Iterable[TraceID]) -> str:
        """Query returning every span and log row of the given traces.

        Raises:
            QueryBuildError: if ``trace_ids`` is empty
        """
        unique_ids = list(dict.fromkeys(trace_ids))
        if not unique_ids:
            raise QueryBuildError("trace query needs at least one trace ID")
        _require(log_measurement=self.log_measurement)

        measurements = _any_of([
            f"r.{MEASUREMENT_COLUMN} == {quote(self.span_measurement)}",
            f"r.{MEASUREMENT_COLUMN} == {quote(self.log_measurement)}",
        ])
        ids = _any_of([f"r.{TRACE_ID_KEY} == {quote(str(trace_id))}" for trace_id in unique_ids])
        stages = [
            _range(self.start_time_min, self.start_time_max),
            f"filter(fn: (r) => {measurements})",
            f"filter(fn: (r) => {ids})",
            _pivot_fields(),
            f"group(columns: [{quote(TRACE_ID_KEY)}])",
        ]
        return _pipeline(self._source(), stages)

    def build_trace_id_query(self) -> str:
        """Query returning the distinct trace IDs of spans matching every filter, newest first."""
        row_filter = [f"r.{MEASUREMENT_COLUMN} == {quote(self.span_measurement)}"]
        if self.service_name:
            row_filter.append(f"r.{SERVICE_NAME_KEY} == {quote(self.service_name)}")
        if self.operation_name:
            row_filter.append(f"r.{OPERATION_NAME_KEY} == {quote(self.operation_name)}")

        stages = [
            _range(self.start_time_min, self.start_time_max),
            f"filter(fn: (r) => {' and '.join(row_filter)})",
            _pivot_fields(),
        ]

        if self.tags:
            predicates = [f"{column(key)} == {quote(value)}" for key, value in sorted(self.tags.items())]
            stages.append(f"filter(fn: (r) => {' and '.join(predicates)})")

        bounds = []
        if self.duration_min is not None:
            bounds.append(f"r.{DURATION_KEY} >= {timedelta_to_nanoseconds(self.duration_min)}")
        if self.duration_max is not None:
            bounds.append(f"r.{DURATION_KEY} <= {timedelta_to_nanoseconds(self.duration_max)}")
        if bounds:
            stages.append(f"filter(fn: (r) => {' and '.join(bounds)})")

        stages += [
            "group()",
            f"sort(columns: [{quote(TIME_COLUMN)}], desc: true)",
            f"unique(column: {quote(TRACE_ID_KEY)})",
        ]
        if self.num_traces > 0:
            stages.append(f"limit(n: {self.num_traces})")
        stages.append(f"keep(columns: [{quote(TRACE_ID_KEY)}])")
        return _pipeline(self._source(), stages)
