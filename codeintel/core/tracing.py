"""
OpenTelemetry distributed tracing configuration.

Spans are created around the key operations:
- ai.process_request / ai.route_model (orchestrator)
- provider.request (gateway)
- completion.provide / completion.rank (completion surface)

Configuration:
- OTEL_SERVICE_NAME: Service name (default: codeintel_api)
- OTEL_EXPORTER_OTLP_ENDPOINT: OTLP gRPC endpoint; spans are only exported when set
- OTEL_TRACES_SAMPLER_ARG: Sampling rate (default: 1.0)
"""
import os
from typing import Any, Dict, Optional

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.sdk.trace.sampling import TraceIdRatioBased
from opentelemetry.trace import Status, StatusCode, Tracer
from opentelemetry.trace.propagation.tracecontext import TraceContextTextMapPropagator

from codeintel.core.logging import get_logger

logger = get_logger(__name__)

__all__ = [
    "StatusCode",
    "configure_tracing",
    "extract_trace_context",
    "get_trace_id_from_context",
    "get_tracer",
    "instrument_fastapi",
    "record_exception",
    "set_span_attribute",
    "set_span_status",
    "shutdown_tracing",
]

_tracer: Optional[Tracer] = None
_tracer_provider: Optional[TracerProvider] = None


def configure_tracing(
    service_name: Optional[str] = None,
    otlp_endpoint: Optional[str] = None,
    sampling_rate: float = 1.0,
) -> None:
    """
    Configure the global tracer provider.

    Args:
        service_name: Defaults to OTEL_SERVICE_NAME or codeintel_api
        otlp_endpoint: Defaults to OTEL_EXPORTER_OTLP_ENDPOINT; no exporter when unset
        sampling_rate: 0.0 to 1.0 (overridden by OTEL_TRACES_SAMPLER_ARG)
    """
    global _tracer, _tracer_provider

    service_name = service_name or os.getenv("OTEL_SERVICE_NAME", "codeintel_api")
    otlp_endpoint = otlp_endpoint or os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT")
    sampling_rate = float(os.getenv("OTEL_TRACES_SAMPLER_ARG", str(sampling_rate)))

    resource = Resource.create({
        "service.name": service_name,
        "service.version": "1.0.0",
    })

    if sampling_rate < 1.0:
        _tracer_provider = TracerProvider(resource=resource, sampler=TraceIdRatioBased(sampling_rate))
    else:
        _tracer_provider = TracerProvider(resource=resource)

    if otlp_endpoint:
        try:
            _tracer_provider.add_span_processor(
                BatchSpanProcessor(OTLPSpanExporter(endpoint=otlp_endpoint))
            )
            logger.info("tracing_otlp_configured", endpoint=otlp_endpoint, sampling_rate=sampling_rate)
        except Exception as e:
            logger.warning(
                "tracing_otlp_configuration_failed",
                endpoint=otlp_endpoint,
                error=str(e),
                error_type=type(e).__name__,
                message="Tracing will continue without OTLP export",
            )

    trace.set_tracer_provider(_tracer_provider)
    _tracer = trace.get_tracer(__name__)

    logger.info(
        "tracing_configured",
        service_name=service_name,
        sampling_rate=sampling_rate,
        otlp_enabled=bool(otlp_endpoint),
    )


def get_tracer() -> Tracer:
    """
    Tracer for the current process.

    Falls back to the globally registered provider (a no-op one when tracing
    was never configured, e.g. in unit tests).
    """
    if _tracer is None:
        return trace.get_tracer(__name__)
    return _tracer


def extract_trace_context(headers: Dict[str, str]) -> Optional[Dict[str, str]]:
    """Extract a W3C TraceContext (traceparent) from HTTP headers."""
    propagator = TraceContextTextMapPropagator()
    try:
        context = propagator.extract(headers)
        if context:
            carrier: Dict[str, str] = {}
            propagator.inject(carrier, context)
            return carrier
    except Exception as e:
        logger.debug(
            "trace_context_extraction_failed",
            error=str(e),
            error_type=type(e).__name__,
        )
    return None


def get_trace_id_from_context() -> Optional[str]:
    """Trace id of the active span as a 32-char hex string."""
    span_context = trace.get_current_span().get_span_context()
    if span_context.is_valid:
        return format(span_context.trace_id, "032x")
    return None


def set_span_attribute(key: str, value: Any) -> None:
    trace.get_current_span().set_attribute(key, value)


def set_span_status(status_code: StatusCode, description: Optional[str] = None) -> None:
    trace.get_current_span().set_status(Status(status_code, description))


def record_exception(exception: BaseException) -> None:
    current_span = trace.get_current_span()
    current_span.record_exception(exception)
    current_span.set_status(Status(StatusCode.ERROR, str(exception)))


def instrument_fastapi(app) -> None:
    """Create automatic spans for every HTTP request."""
    try:
        FastAPIInstrumentor.instrument_app(app)
        logger.info("tracing_fastapi_instrumented")
    except Exception as e:
        logger.warning(
            "tracing_fastapi_instrumentation_failed",
            error=str(e),
            error_type=type(e).__name__,
        )


def shutdown_tracing() -> None:
    """Flush and shut down the tracer provider."""
    global _tracer, _tracer_provider
    if _tracer_provider:
        try:
            _tracer_provider.shutdown()
            logger.info("tracing_shutdown")
        except Exception as e:
            logger.warning(
                "tracing_shutdown_failed",
                error=str(e),
                error_type=type(e).__name__,
            )
    _tracer = None
    _tracer_provider = None
