"""Span reader: the read contract of the tracing storage backend.

Each operation builds a Flux query, runs it through the query service
and decodes the result tables. The reader holds no per-request state,
so concurrent calls are safe.
"""

import asyncio
from datetime import datetime, timedelta, timezone
from typing import List, Optional

from common.pylogger import get_python_logger
from core import flux_query, flux_results
from core.flux_results import TableStream
from core.config import (
    DEFAULT_LOG_MEASUREMENT,
    DEFAULT_LOOKBACK_HOURS,
    DEFAULT_SPAN_MEASUREMENT,
    OPERATION_NAME_KEY,
    SERVICE_NAME_KEY,
)
from core.error_handling import TraceNotFoundError
from core.models import DependencyLink, Trace, TraceID, TraceQueryParameters
from query_server.influx_query import InfluxQueryService

logger = get_python_logger(__name__)


class SpanReader:
    """Reads services, operations, traces and dependency links."""

    def __init__(
        self,
        query_service: InfluxQueryService,
        bucket: str,
        span_measurement: str = DEFAULT_SPAN_MEASUREMENT,
        log_measurement: str = DEFAULT_LOG_MEASUREMENT,
        default_lookback: timedelta = timedelta(hours=DEFAULT_LOOKBACK_HOURS),
    ):
        self.query_service = query_service
        self.bucket = bucket
        self.span_measurement = span_measurement
        self.log_measurement = log_measurement
        self.default_lookback = default_lookback

    @classmethod
    def from_settings(cls, settings) -> "SpanReader":
        return cls(
            query_service=InfluxQueryService.from_settings(settings),
            bucket=settings.bucket,
            span_measurement=settings.span_measurement,
            log_measurement=settings.log_measurement,
            default_lookback=timedelta(hours=settings.default_lookback_hours),
        )

    async def close(self) -> None:
        await self.query_service.aclose()

    async def _query(self, query: str) -> TableStream:
        tables = await self.query_service.query(query)
        # Give cancellation a chance before decoding a possibly large result
        await asyncio.sleep(0)
        return tables

    async def get_services(self) -> List[str]:
        """Return all services that reported spans."""
        logger.debug("get_services called")
        query = flux_query.build_service_list_query(self.bucket, self.span_measurement, SERVICE_NAME_KEY)
        services = flux_results.string_values_from_result(await self._query(query))
        logger.info(f"Found {len(services)} services")
        return services

    async def get_operations(self, service: str) -> List[str]:
        """Return all operation names recorded for a service."""
        logger.debug(f"get_operations called for service {service!r}")
        query = flux_query.build_operation_list_query(
            self.bucket, self.span_measurement, OPERATION_NAME_KEY, SERVICE_NAME_KEY, service
        )
        return flux_results.string_values_from_result(await self._query(query))

    async def get_trace(self, trace_id: TraceID) -> Trace:
        """Load one trace, searching back ``default_lookback`` from now.

        Raises:
            TraceNotFoundError: if no span of the trace is stored
            ConsistencyError: if the result holds more than one trace
        """
        logger.debug(f"get_trace called for {trace_id}")
        start = datetime.now(timezone.utc) - self.default_lookback
        query = flux_query.FluxTraceQuery(
            self.bucket, self.span_measurement, self.log_measurement, start
        ).build_trace_query([trace_id])

        traces = flux_results.traces_from_result(
            await self._query(query), self.span_measurement, self.log_measurement, max_traces=1
        )
        if not traces:
            raise TraceNotFoundError(trace_id)
        return traces[0]

    async def find_traces(self, params: TraceQueryParameters) -> List[Trace]:
        """Return traces matching the search, most recent first.

        Runs the trace-ID search first and only fetches traces when it
        found any.
        """
        logger.debug(f"find_traces called with {params.describe()}")
        trace_ids = await self.find_trace_ids(params)
        if not trace_ids:
            return []

        tq = flux_query.FluxTraceQuery(
            self.bucket, self.span_measurement, self.log_measurement, params.start_time_min
        )
        if params.start_time_max is not None:
            tq = tq.with_start_time_max(params.start_time_max)

        traces = flux_results.traces_from_result(
            await self._query(tq.build_trace_query(trace_ids)),
            self.span_measurement,
            self.log_measurement,
            max_traces=len(set(trace_ids)),
        )
        order = {trace_id: i for i, trace_id in enumerate(trace_ids)}
        traces.sort(key=lambda trace: order.get(trace.trace_id, len(order)))
        logger.info(f"find_traces returned {len(traces)} traces for {len(trace_ids)} trace IDs")
        return traces

    async def find_trace_ids(self, params: TraceQueryParameters) -> List[TraceID]:
        """Return IDs of traces matching every filter in ``params``.

        Raises:
            InvalidQueryError: if the parameters fail validation
        """
        params.validate_query()
        tq = flux_query.FluxTraceQuery.from_parameters(
            self.bucket, self.span_measurement, self.log_measurement, params
        )
        return flux_results.trace_ids_from_result(await self._query(tq.build_trace_id_query()))

    async def get_dependencies(
        self, end_ts: datetime, lookback: Optional[timedelta] = None
    ) -> List[DependencyLink]:
        """Return service call edges seen in ``[end_ts - lookback, end_ts)``."""
        lookback = self.default_lookback if lookback is None else lookback
        logger.debug(f"get_dependencies called for {lookback} before {end_ts}")
        query = flux_query.build_dependency_query(
            self.bucket, self.span_measurement, end_ts - lookback, end_ts
        )
        return flux_results.dependency_links_from_result(await self._query(query))
