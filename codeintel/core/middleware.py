"""
Middleware for trace ID propagation and request context management.

- Reads X-Trace-ID / X-Request-ID headers or a W3C traceparent, otherwise
  generates a trace id
- Generates a unique request id per HTTP request
- Binds both into the logging context and echoes them as response headers
- Records HTTP RED metrics
"""
import time
from typing import Callable

from fastapi import HTTPException, Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

from codeintel.core.logging import bind_http_ids, clear_http_ids, get_logger, new_correlation_id
from codeintel.core.metrics import record_http_request
from codeintel.core.tracing import (
    StatusCode,
    get_trace_id_from_context,
    get_tracer,
    record_exception,
    set_span_attribute,
    set_span_status,
)

logger = get_logger(__name__)


def _format_otel_trace_id(otel_trace_id: str) -> str:
    """32-char hex trace id -> UUID layout used in logs and headers."""
    if len(otel_trace_id) != 32:
        return otel_trace_id
    return (
        f"{otel_trace_id[0:8]}-{otel_trace_id[8:12]}-{otel_trace_id[12:16]}-"
        f"{otel_trace_id[16:20]}-{otel_trace_id[20:32]}"
    )


class TraceIDMiddleware(BaseHTTPMiddleware):
    """Binds trace/request ids for structured logging and records HTTP metrics."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        # Priority: X-Trace-ID > X-Request-ID > OpenTelemetry context > generate new
        trace_id = request.headers.get("X-Trace-ID") or request.headers.get("X-Request-ID")
        if not trace_id:
            otel_trace_id = get_trace_id_from_context()
            trace_id = _format_otel_trace_id(otel_trace_id) if otel_trace_id else new_correlation_id()

        request_id = new_correlation_id()
        bind_http_ids(trace_id, request_id)

        tracer = get_tracer()
        with tracer.start_as_current_span("http.request"):
            set_span_attribute("http.method", request.method)
            set_span_attribute("http.route", request.url.path)

            start_time = time.time()
            request.state.start_time = start_time
            logger.info(
                "request_started",
                method=request.method,
                path=request.url.path,
                client_host=request.client.host if request.client else None,
            )

            try:
                response = await call_next(request)
                process_time = time.time() - start_time
                latency_ms = int(process_time * 1000)

                set_span_attribute("http.status_code", response.status_code)
                set_span_attribute("http.response.latency_ms", latency_ms)
                record_http_request(
                    method=request.method,
                    endpoint=request.url.path,
                    status_code=response.status_code,
                    duration_seconds=process_time,
                )
                logger.info(
                    "request_completed",
                    method=request.method,
                    path=request.url.path,
                    status_code=response.status_code,
                    latency_ms=latency_ms,
                )

                response.headers["X-Trace-ID"] = trace_id
                response.headers["X-Request-ID"] = request_id
                return response

            except HTTPException as exc:
                # Metrics for HTTPExceptions are recorded by the exception handler
                set_span_attribute("http.status_code", exc.status_code)
                set_span_attribute("error", True)
                raise
            except Exception as e:
                process_time = time.time() - start_time
                record_exception(e)
                set_span_status(StatusCode.ERROR, str(e))
                set_span_attribute("http.status_code", 500)
                record_http_request(
                    method=request.method,
                    endpoint=request.url.path,
                    status_code=500,
                    duration_seconds=process_time,
                )
                logger.error(
                    "request_failed",
                    method=request.method,
                    path=request.url.path,
                    error=str(e),
                    error_type=type(e).__name__,
                    latency_ms=int(process_time * 1000),
                    exc_info=True,
                )
                raise
            finally:
                clear_http_ids()
