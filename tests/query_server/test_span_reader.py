"""
Tests for the span reader.

The query service is mocked; each test feeds it annotated CSV bodies and
checks the queries sent and the domain objects returned.
"""

import asyncio
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, Mock

import pytest

from core.error_handling import (
    ConsistencyError,
    InvalidQueryError,
    QueryExecutionError,
    TraceNotFoundError,
)
from core.flux_results import TableStream
from core.models import TraceID, TraceQueryParameters
from query_server.span_reader import SpanReader

TRACE_A = "0000000000000001000000000000000a"
TRACE_B = "0000000000000002000000000000000b"
START = datetime(2024, 1, 1, tzinfo=timezone.utc)
END = datetime(2024, 1, 2, tzinfo=timezone.utc)


def make_reader(*bodies):
    """Reader whose query service answers each call with the next body."""
    service = Mock()
    service.query = AsyncMock(side_effect=[TableStream(body) for body in bodies])
    service.aclose = AsyncMock()
    return SpanReader(service, bucket="tracing", default_lookback=timedelta(hours=1))


def sent_queries(reader):
    return [c.args[0] for c in reader.query_service.query.call_args_list]


def search(**overrides):
    values = dict(service_name="frontend", start_time_min=START)
    values.update(overrides)
    return TraceQueryParameters(**values)


class TestListings:

    def test_get_services(self, flux_csv):
        reader = make_reader(flux_csv.values("frontend", "backend"))
        assert asyncio.run(reader.get_services()) == ["frontend", "backend"]
        assert "v1.measurementTagValues(" in sent_queries(reader)[0]

    def test_get_services_empty(self):
        reader = make_reader("")
        assert asyncio.run(reader.get_services()) == []

    def test_get_operations(self, flux_csv):
        reader = make_reader(flux_csv.values("GET /", "POST /cart"))
        assert asyncio.run(reader.get_operations("frontend")) == ["GET /", "POST /cart"]
        assert 'r["service_name"] == "frontend"' in sent_queries(reader)[0]

    def test_execution_errors_propagate(self):
        service = Mock()
        service.query = AsyncMock(side_effect=QueryExecutionError("boom", status_code=500))
        reader = SpanReader(service, bucket="tracing")
        with pytest.raises(QueryExecutionError):
            asyncio.run(reader.get_services())


class TestGetTrace:

    def test_returns_the_trace(self, flux_csv):
        reader = make_reader(flux_csv.traces([
            flux_csv.span_row(TRACE_A, "01"),
            flux_csv.log_row(TRACE_A, "01"),
        ]))
        trace = asyncio.run(reader.get_trace(TraceID.from_hex(TRACE_A)))
        assert str(trace.trace_id) == TRACE_A
        assert len(trace.spans[0].logs) == 1
        assert f'r.trace_id == "{TRACE_A}"' in sent_queries(reader)[0]

    def test_searches_back_default_lookback(self, flux_csv, monkeypatch):
        class FrozenDatetime(datetime):
            @classmethod
            def now(cls, tz=None):
                return datetime(2024, 1, 2, 12, tzinfo=timezone.utc)

        monkeypatch.setattr("query_server.span_reader.datetime", FrozenDatetime)
        reader = make_reader(flux_csv.traces([flux_csv.span_row(TRACE_A, "01")]))
        asyncio.run(reader.get_trace(TraceID.from_hex(TRACE_A)))

        query = sent_queries(reader)[0]
        assert "range(start: 2024-01-02T11:00:00Z)" in query
        assert "stop:" not in query

    def test_no_rows_is_not_found(self):
        reader = make_reader("")
        with pytest.raises(TraceNotFoundError):
            asyncio.run(reader.get_trace(TraceID.from_hex(TRACE_A)))

    def test_two_traces_is_a_consistency_error(self, flux_csv):
        reader = make_reader(flux_csv.traces([
            flux_csv.span_row(TRACE_A, "01"),
            flux_csv.span_row(TRACE_B, "01"),
        ], table_ids=[0, 1]))
        with pytest.raises(ConsistencyError):
            asyncio.run(reader.get_trace(TraceID.from_hex(TRACE_A)))


class TestFindTraces:

    def test_finds_trace_ids(self, flux_csv):
        reader = make_reader(flux_csv.values(TRACE_B, TRACE_A, column="trace_id"))
        ids = asyncio.run(reader.find_trace_ids(search(operation_name="GET /")))
        assert [str(i) for i in ids] == [TRACE_B, TRACE_A]
        assert 'r.operation_name == "GET /"' in sent_queries(reader)[0]

    def test_invalid_parameters_are_rejected_before_querying(self):
        reader = make_reader()
        with pytest.raises(InvalidQueryError):
            asyncio.run(reader.find_traces(TraceQueryParameters(service_name="frontend")))
        reader.query_service.query.assert_not_called()

    def test_no_trace_ids_skips_trace_query(self):
        reader = make_reader("")
        assert asyncio.run(reader.find_traces(search())) == []
        assert reader.query_service.query.call_count == 1

    def test_fetches_traces_in_trace_id_order(self, flux_csv):
        reader = make_reader(
            flux_csv.values(TRACE_B, TRACE_A, column="trace_id"),
            flux_csv.traces([
                flux_csv.span_row(TRACE_A, "01"),
                flux_csv.span_row(TRACE_B, "02"),
            ], table_ids=[0, 1]),
        )
        traces = asyncio.run(reader.find_traces(search(start_time_max=END)))

        assert [str(t.trace_id) for t in traces] == [TRACE_B, TRACE_A]
        trace_query = sent_queries(reader)[1]
        assert "range(start: 2024-01-01T00:00:00Z, stop: 2024-01-02T00:00:00Z)" in trace_query
        assert TRACE_A in trace_query and TRACE_B in trace_query

    def test_more_traces_than_ids_is_a_consistency_error(self, flux_csv):
        reader = make_reader(
            flux_csv.values(TRACE_A, column="trace_id"),
            flux_csv.traces([
                flux_csv.span_row(TRACE_A, "01"),
                flux_csv.span_row(TRACE_B, "01"),
            ], table_ids=[0, 1]),
        )
        with pytest.raises(ConsistencyError):
            asyncio.run(reader.find_traces(search()))


class TestDependencies:

    def test_get_dependencies(self, flux_csv):
        body = flux_csv.section(
            [("span_id", "string", False), ("references", "string", False), ("service_name", "string", False)],
            [
                ["01", f"child-of:{TRACE_A}:02", "frontend"],
                ["02", "", "backend"],
            ],
        )
        reader = make_reader(body)
        links = asyncio.run(reader.get_dependencies(END, timedelta(days=1)))

        assert [(link.parent, link.child, link.call_count) for link in links] == [("frontend", "backend", 1)]
        assert "range(start: 2024-01-01T00:00:00Z, stop: 2024-01-02T00:00:00Z)" in sent_queries(reader)[0]

    def test_default_lookback(self):
        reader = make_reader("")
        asyncio.run(reader.get_dependencies(END))
        assert "range(start: 2024-01-01T23:00:00Z, stop: 2024-01-02T00:00:00Z)" in sent_queries(reader)[0]


def test_concurrent_calls_do_not_share_state(flux_csv):
    reader = make_reader(flux_csv.values("a"), flux_csv.values("b"))

    async def both():
        return await asyncio.gather(reader.get_services(), reader.get_services())

    results = asyncio.run(both())
    assert sorted(results) == [["a"], ["b"]]


def test_close_closes_query_service():
    reader = make_reader()
    asyncio.run(reader.close())
    reader.query_service.aclose.assert_awaited_once()
