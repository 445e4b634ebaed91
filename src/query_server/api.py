"""FastAPI application exposing the span reader as a JSON read API."""

import json
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional

from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.responses import JSONResponse

from core.error_handling import InvalidQueryError, ReaderError, ReaderErrorClassifier
from core.models import DependencyLink, KeyValue, Span, Trace, TraceID, TraceQueryParameters, format_span_id
from core.time_utils import from_microseconds, parse_duration, to_microseconds
from query_server.settings import settings
from query_server.span_reader import SpanReader

# Use stdlib logger - structlog is initialized in main.py
logger = logging.getLogger(__name__)


# === JSON CONVERSION ===

def _key_value_json(kv: KeyValue) -> Dict[str, Any]:
    return {"key": kv.key, "type": kv.value_type, "value": kv.value}


def _span_json(span: Span, process_id: str) -> Dict[str, Any]:
    return {
        "traceID": str(span.trace_id),
        "spanID": format_span_id(span.span_id),
        "operationName": span.operation_name,
        "references": [
            {
                "refType": ref.ref_type.replace("-", "_").upper(),
                "traceID": str(ref.trace_id),
                "spanID": format_span_id(ref.span_id),
            }
            for ref in span.references
        ],
        "flags": span.flags,
        "startTime": to_microseconds(span.start_time),
        "duration": span.duration // timedelta(microseconds=1),
        "tags": [_key_value_json(kv) for kv in span.tags],
        "logs": [
            {
                "timestamp": to_microseconds(log.timestamp),
                "fields": [_key_value_json(kv) for kv in log.fields],
            }
            for log in span.logs
        ],
        "processID": process_id,
        "warnings": None,
    }


def trace_to_json(trace: Trace) -> Dict[str, Any]:
    """Render a trace in the tracing UI's JSON shape (one process per service)."""
    process_ids: Dict[str, str] = {}
    spans = []
    for span in trace.spans:
        service = span.process.service_name
        if service not in process_ids:
            process_ids[service] = f"p{len(process_ids) + 1}"
        spans.append(_span_json(span, process_ids[service]))
    return {
        "traceID": str(trace.trace_id),
        "spans": spans,
        "processes": {pid: {"serviceName": service, "tags": []} for service, pid in process_ids.items()},
        "warnings": None,
    }


def dependency_to_json(link: DependencyLink) -> Dict[str, Any]:
    return {"parent": link.parent, "child": link.child, "callCount": link.call_count}


def _parse_trace_id(trace_id: str) -> TraceID:
    try:
        return TraceID.from_hex(trace_id)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


def _parse_optional_duration(name: str, value: Optional[str]):
    if not value:
        return None
    try:
        return parse_duration(value)
    except ValueError as e:
        raise InvalidQueryError(f"{name}: {e}") from e


def _parse_tags(value: Optional[str]) -> Dict[str, str]:
    if not value:
        return {}
    try:
        tags = json.loads(value)
    except ValueError as e:
        raise InvalidQueryError(f"tags must be a JSON object: {e}") from e
    if not isinstance(tags, dict):
        raise InvalidQueryError("tags must be a JSON object")
    return {str(k): str(v) for k, v in tags.items()}


# === APPLICATION ===

def create_app(reader_factory: Optional[Callable[[], SpanReader]] = None) -> FastAPI:
    """Build the API app; the reader is created at startup and closed on shutdown."""
    reader_factory = reader_factory or (lambda: SpanReader.from_settings(settings))

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        app.state.reader = reader_factory()
        logger.info(f"Span reader ready for bucket {app.state.reader.bucket!r}")
        try:
            yield
        finally:
            await app.state.reader.close()

    app = FastAPI(lifespan=lifespan)

    @app.exception_handler(ReaderError)
    async def reader_error_handler(request: Request, exc: ReaderError):
        error_type, message = ReaderErrorClassifier.describe(exc, url=settings.url)
        status = ReaderErrorClassifier.status_code(exc)
        if status >= 500:
            logger.error(f"{request.url.path} failed ({error_type.value}): {message}")
        return JSONResponse(
            status_code=status,
            content={"data": None, "errors": [{"code": status, "msg": message}]},
        )

    @app.get("/health")
    async def health_check():
        return JSONResponse(
            status_code=200,
            content={"status": "healthy", "service": "influx-trace-reader"},
        )

    @app.get("/api/services")
    async def get_services(request: Request):
        services: List[str] = await request.app.state.reader.get_services()
        return {"data": services, "total": len(services)}

    @app.get("/api/services/{service}/operations")
    async def get_operations(service: str, request: Request):
        operations: List[str] = await request.app.state.reader.get_operations(service)
        return {"data": operations, "total": len(operations)}

    @app.get("/api/traces/{trace_id}")
    async def get_trace(trace_id: str, request: Request):
        trace = await request.app.state.reader.get_trace(_parse_trace_id(trace_id))
        return {"data": [trace_to_json(trace)]}

    @app.get("/api/traces")
    async def find_traces(
        request: Request,
        service: str = "",
        operation: str = "",
        tags: Optional[str] = None,
        start: Optional[int] = Query(default=None, description="Microseconds since epoch"),
        end: Optional[int] = Query(default=None, description="Microseconds since epoch"),
        minDuration: Optional[str] = None,
        maxDuration: Optional[str] = None,
        limit: int = 20,
    ):
        reader: SpanReader = request.app.state.reader
        start_time_min = (
            from_microseconds(start) if start is not None
            else datetime.now(timezone.utc) - reader.default_lookback
        )
        params = TraceQueryParameters(
            service_name=service,
            operation_name=operation,
            tags=_parse_tags(tags),
            start_time_min=start_time_min,
            start_time_max=from_microseconds(end) if end is not None else None,
            duration_min=_parse_optional_duration("minDuration", minDuration),
            duration_max=_parse_optional_duration("maxDuration", maxDuration),
            num_traces=limit,
        )
        traces = await reader.find_traces(params)
        return {"data": [trace_to_json(t) for t in traces], "total": len(traces)}

    @app.get("/api/dependencies")
    async def get_dependencies(
        request: Request,
        endTs: Optional[int] = Query(default=None, description="Milliseconds since epoch"),
        lookback: Optional[int] = Query(default=None, description="Milliseconds"),
    ):
        reader: SpanReader = request.app.state.reader
        end_ts = from_microseconds(endTs * 1000) if endTs is not None else datetime.now(timezone.utc)
        window = timedelta(milliseconds=lookback) if lookback is not None else None
        links = await reader.get_dependencies(end_ts, window)
        return {"data": [dependency_to_json(link) for link in links], "total": len(links)}

    return app


app = create_app()
