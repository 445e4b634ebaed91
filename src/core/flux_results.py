"""Decoders turning query result tables into domain objects.

Response bodies are parsed by the ``influxdb-client`` annotated CSV
parser; this module adds typed column access on top of its records.
All functions walk tables, then rows within each table. Any type
mismatch or unparsable value raises ``DecodeError`` for the whole
result; nothing is returned partially.
"""

import io
import logging
from datetime import datetime, timedelta
from typing import Dict, Iterable, Iterator, List, Optional, Tuple, Union

from influxdb_client.client.flux_csv_parser import (
    FluxCsvParser,
    FluxCsvParserException,
    FluxQueryException,
    FluxSerializationMode,
)
from influxdb_client.client.flux_table import FluxRecord, FluxTable

from core.config import (
    DURATION_KEY,
    FLAGS_KEY,
    FRAMING_COLUMNS,
    MEASUREMENT_COLUMN,
    OPERATION_NAME_KEY,
    REFERENCE_PART_SEPARATOR,
    REFERENCE_SEPARATOR,
    REFERENCES_KEY,
    RESERVED_COLUMNS,
    SERVICE_NAME_KEY,
    SPAN_ID_KEY,
    TIME_COLUMN,
    TRACE_ID_KEY,
)
from core.error_handling import ConsistencyError, DecodeError, QueryExecutionError
from core.models import (
    DependencyLink,
    KeyValue,
    Log,
    Process,
    Span,
    SpanRef,
    Trace,
    TraceID,
    span_id_from_hex,
)
from core.time_utils import nanoseconds_to_timedelta

logger = logging.getLogger(__name__)

REF_TYPES = ("child-of", "follows-from")


class TableStream:
    """Single-pass sequence of the tables in one query response body.

    The body is parsed when iteration starts. An error table in the body
    raises ``QueryExecutionError``; a malformed body raises ``DecodeError``.
    """

    def __init__(self, body: Union[bytes, str]):
        self._body = body.encode("utf-8") if isinstance(body, str) else body
        self._consumed = False

    def __iter__(self) -> Iterator[FluxTable]:
        if self._consumed:
            raise RuntimeError("table stream can only be iterated once")
        self._consumed = True
        return iter(self._parse())

    def _parse(self) -> List[FluxTable]:
        parser = FluxCsvParser(
            response=io.BytesIO(self._body),
            serialization_mode=FluxSerializationMode.tables,
        )
        try:
            for _ in parser.generator():
                pass
        except FluxQueryException as e:
            raise QueryExecutionError(f"query failed: {e.message}") from e
        except (FluxCsvParserException, ValueError, IndexError) as e:
            raise DecodeError(f"malformed query response: {e}") from e
        return list(parser.tables)


def _data_columns(table: FluxTable) -> List[str]:
    return [column.label for column in table.columns if column.label not in FRAMING_COLUMNS]


def _get_string(record: FluxRecord, key: str) -> Optional[str]:
    value = record.values.get(key)
    if value is not None and not isinstance(value, str):
        raise DecodeError(f"column {key!r} is not a string")
    return value


def _get_long(record: FluxRecord, key: str) -> Optional[int]:
    value = record.values.get(key)
    if value is not None and (isinstance(value, bool) or not isinstance(value, int)):
        raise DecodeError(f"column {key!r} is not an integer")
    return value


def _get_time(record: FluxRecord, key: str) -> Optional[datetime]:
    value = record.values.get(key)
    if value is not None and not isinstance(value, datetime):
        raise DecodeError(f"column {key!r} is not a timestamp")
    return value


def string_values_from_result(tables: Iterable[FluxTable]) -> List[str]:
    """First data column of every row, in stream order. Duplicates are kept."""
    values = []
    for table in tables:
        columns = _data_columns(table)
        for record in table.records:
            value = _get_string(record, columns[0])
            if value is None:
                raise DecodeError("null value in string listing")
            values.append(value)
    return values


def trace_ids_from_result(tables: Iterable[FluxTable]) -> List[TraceID]:
    trace_ids = []
    for table in tables:
        columns = _data_columns(table)
        for record in table.records:
            trace_ids.append(_parse_trace_id(_get_string(record, columns[0])))
    return trace_ids


def parse_references(text: Optional[str]) -> List[SpanRef]:
    """Parse ``<ref_type>:<trace_id>:<span_id>`` entries separated by commas."""
    refs = []
    if not text:
        return refs
    for entry in text.split(REFERENCE_SEPARATOR):
        entry = entry.strip()
        if not entry:
            continue
        parts = entry.split(REFERENCE_PART_SEPARATOR)
        if len(parts) != 3 or parts[0] not in REF_TYPES:
            raise DecodeError(f"invalid span reference: {entry!r}")
        refs.append(SpanRef(
            ref_type=parts[0],
            trace_id=_parse_trace_id(parts[1]),
            span_id=_parse_span_id(parts[2]),
        ))
    return refs


def _parse_trace_id(text: Optional[str]) -> TraceID:
    if text is None:
        raise DecodeError("missing trace ID")
    try:
        return TraceID.from_hex(text)
    except ValueError as e:
        raise DecodeError(str(e)) from e


def _parse_span_id(text: Optional[str]) -> int:
    if text is None:
        raise DecodeError("missing span ID")
    try:
        return span_id_from_hex(text)
    except ValueError as e:
        raise DecodeError(str(e)) from e


def _required_time(record: FluxRecord) -> datetime:
    value = _get_time(record, TIME_COLUMN)
    if value is None:
        raise DecodeError("row has no timestamp")
    return value


def _key_values(record: FluxRecord) -> List[KeyValue]:
    """Non-reserved, non-null columns of a row as typed key/values."""
    result = []
    for key, value in record.values.items():
        if value is None or key in RESERVED_COLUMNS or key in FRAMING_COLUMNS:
            continue
        if isinstance(value, (datetime, timedelta, bytes)):
            value = str(value)
        result.append(KeyValue(key=key, value=value))
    return result


class _TraceAssembler:
    """Groups span and log rows into traces.

    Logs may arrive before their span; they wait in ``pending_logs``
    until the span row shows up.
    """

    def __init__(self, span_measurement: str, log_measurement: str):
        self.span_measurement = span_measurement
        self.log_measurement = log_measurement
        self.traces: Dict[TraceID, Dict[int, Span]] = {}
        self.pending_logs: Dict[Tuple[TraceID, int], List[Log]] = {}
        self.duplicate_spans = 0

    def add(self, record: FluxRecord) -> None:
        measurement = _get_string(record, MEASUREMENT_COLUMN)
        trace_id = _parse_trace_id(_get_string(record, TRACE_ID_KEY))
        spans = self.traces.setdefault(trace_id, {})

        if measurement == self.span_measurement:
            self._add_span(trace_id, spans, record)
        elif measurement == self.log_measurement:
            self._add_log(trace_id, spans, record)
        else:
            raise DecodeError(f"unexpected measurement {measurement!r}")

    def _add_span(self, trace_id: TraceID, spans: Dict[int, Span], record: FluxRecord) -> None:
        span_id = _parse_span_id(_get_string(record, SPAN_ID_KEY))
        if span_id in spans:
            self.duplicate_spans += 1
            return

        span = Span(
            trace_id=trace_id,
            span_id=span_id,
            operation_name=_get_string(record, OPERATION_NAME_KEY) or "",
            references=parse_references(_get_string(record, REFERENCES_KEY)),
            flags=_get_long(record, FLAGS_KEY) or 0,
            start_time=_required_time(record),
            duration=nanoseconds_to_timedelta(_get_long(record, DURATION_KEY) or 0),
            tags=_key_values(record),
            process=Process(service_name=_get_string(record, SERVICE_NAME_KEY) or ""),
        )
        span.logs.extend(self.pending_logs.pop((trace_id, span_id), []))
        spans[span_id] = span

    def _add_log(self, trace_id: TraceID, spans: Dict[int, Span], record: FluxRecord) -> None:
        span_id = _parse_span_id(_get_string(record, SPAN_ID_KEY))
        log = Log(timestamp=_required_time(record), fields=_key_values(record))
        span = spans.get(span_id)
        if span is not None:
            span.logs.append(log)
        else:
            self.pending_logs.setdefault((trace_id, span_id), []).append(log)

    def finish(self) -> List[Trace]:
        if self.duplicate_spans:
            logger.warning(f"Ignored {self.duplicate_spans} duplicate span rows")
        orphaned = sum(len(logs) for logs in self.pending_logs.values())
        if orphaned:
            logger.warning(f"Dropped {orphaned} logs whose span was not in the result")

        traces = []
        for spans in self.traces.values():
            if not spans:
                continue
            for span in spans.values():
                span.logs.sort(key=lambda log: log.timestamp)
            traces.append(Trace(spans=list(spans.values())))
        return traces


def traces_from_result(
    tables: Iterable[FluxTable],
    span_measurement: str,
    log_measurement: str,
    max_traces: Optional[int] = None,
) -> List[Trace]:
    """Assemble traces from span and log rows in any order.

    Args:
        tables: Result tables from a trace query
        span_measurement: Measurement name of span rows
        log_measurement: Measurement name of log rows
        max_traces: Number of distinct traces the query can return at most

    Raises:
        DecodeError: on malformed rows
        ConsistencyError: if more than ``max_traces`` traces come back
    """
    assembler = _TraceAssembler(span_measurement, log_measurement)
    for table in tables:
        for record in table.records:
            assembler.add(record)

    traces = assembler.finish()
    if max_traces is not None and len(traces) > max_traces:
        raise ConsistencyError(
            f"query returned {len(traces)} traces, expected at most {max_traces}"
        )
    return traces


def dependency_links_from_result(tables: Iterable[FluxTable]) -> List[DependencyLink]:
    """Derive service call edges from span rows.

    The first pass indexes span ID to service name over every row, the
    second pass resolves each reference against that index, so rows may
    come in any order. A span that references a span of another service
    is an edge from its own service (parent) to the referenced span's
    service (child). References within one service produce no edge.
    """
    rows = []
    # Keyed by span ID alone since the dependency query projects no trace ID;
    # equal span IDs from different traces in one window share an entry
    service_by_span: Dict[int, str] = {}
    for table in tables:
        for record in table.records:
            span_id_text = _get_string(record, SPAN_ID_KEY)
            service = _get_string(record, SERVICE_NAME_KEY) or ""
            references = _get_string(record, REFERENCES_KEY)
            if span_id_text is not None:
                service_by_span[_parse_span_id(span_id_text)] = service
            rows.append((service, references))

    counts: Dict[Tuple[str, str], int] = {}
    for parent, references in rows:
        for ref in parse_references(references):
            child = service_by_span.get(ref.span_id)
            if child is None or child == parent:
                continue
            counts[(parent, child)] = counts.get((parent, child), 0) + 1

    return [
        DependencyLink(parent=parent, child=child, call_count=count)
        for (parent, child), count in counts.items()
    ]
