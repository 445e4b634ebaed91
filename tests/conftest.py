"""Shared fixtures: builders for annotated CSV response bodies."""

import csv
import io

import pytest

TRACE_COLUMNS = [
    ("_time", "dateTime:RFC3339Nano", False),
    ("_measurement", "string", False),
    ("trace_id", "string", True),
    ("service_name", "string", False),
    ("operation_name", "string", False),
    ("span_id", "string", False),
    ("duration", "long", False),
    ("flags", "long", False),
    ("references", "string", False),
    ("http.method", "string", False),
    ("event", "string", False),
]


class FluxCsvBuilder:
    """Builds response bodies in the query service's annotated CSV format."""

    def section(self, columns, rows, table_ids=None, defaults=None):
        """One annotated section; ``table_ids`` gives each row's table number."""
        out = io.StringIO()
        writer = csv.writer(out, lineterminator="\r\n")
        defaults = defaults or {}
        writer.writerow(["#group", "false", "false"] + ["true" if g else "false" for _, _, g in columns])
        writer.writerow(["#datatype", "string", "long"] + [dt for _, dt, _ in columns])
        writer.writerow(["#default", "_result", ""] + [defaults.get(name, "") for name, _, _ in columns])
        writer.writerow(["", "result", "table"] + [name for name, _, _ in columns])
        for i, row in enumerate(rows):
            table = table_ids[i] if table_ids else 0
            writer.writerow(["", "", str(table)] + [str(cell) for cell in row])
        return out.getvalue()

    def body(self, *sections):
        return "\r\n".join(sections)

    def values(self, *values, column="_value"):
        """A single-column string listing, as returned by tag value queries."""
        return self.section([(column, "string", False)], [[v] for v in values])

    def span_row(
        self,
        trace_id,
        span_id,
        service="frontend",
        operation="GET /",
        start="2024-01-01T00:00:00Z",
        duration=1500000,
        references="",
        method="GET",
    ):
        return [start, "span", trace_id, service, operation, span_id, duration, 1, references, method, ""]

    def log_row(self, trace_id, span_id, timestamp="2024-01-01T00:00:00.001Z", event="cache miss"):
        return [timestamp, "logs", trace_id, "", "", span_id, "", "", "", "", event]

    def traces(self, rows, table_ids=None):
        return self.section(TRACE_COLUMNS, rows, table_ids=table_ids)


@pytest.fixture
def flux_csv():
    return FluxCsvBuilder()
