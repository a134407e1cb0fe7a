import time
from typing import Optional

import httpx
from fastapi import FastAPI, Request, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .core.config import Settings
from .core.errors import (
    AIError,
    InsufficientResourcesError,
    InvalidRequestError,
    PrivacyViolationError,
    RateLimitExceededError,
    RequestTimeoutError,
)
from .core.logging import configure_logging, get_logger, get_trace_id
from .core.middleware import TraceIDMiddleware
from .core.metrics import PrometheusMetricsSink, record_http_request
from .core.tracing import (
    configure_tracing,
    instrument_fastapi,
    shutdown_tracing,
    get_trace_id_from_context,
    record_exception,
    set_span_status,
    StatusCode,
)
from .dependencies import Services
from .routes import assist, completions, feedback, health, metrics
from .services.ai.gateway import build_gateway
from .services.ai.orchestration import RequestOrchestrator
from .services.ai.selection import ModelSelector
from .services.completion.context import CompletionContextClassifier
from .services.completion.ranking import RelevanceRanker
from .services.completion.service import CompletionService

settings = Settings.from_env()

# Configure structured logging
# Use JSON output in production (containerized), console output in development
configure_logging(
    log_level=settings.log_level,
    service_name=settings.service_name,
    json_output=settings.log_json,
)

logger = get_logger(__name__)

# Configure distributed tracing (OTLP export only when OTEL_EXPORTER_OTLP_ENDPOINT is set)
configure_tracing(service_name=settings.service_name)

AI_ERROR_STATUS = {
    InvalidRequestError: 400,
    PrivacyViolationError: 403,
    RateLimitExceededError: 429,
    InsufficientResourcesError: 503,
    RequestTimeoutError: 504,
}


def status_code_for(exc: AIError) -> int:
    for error_type, status_code in AI_ERROR_STATUS.items():
        if isinstance(exc, error_type):
            return status_code
    return 502


def build_services(settings: Settings, http_client: Optional[httpx.AsyncClient] = None) -> Services:
    """Wire gateways, selector, orchestrator and the completion pipeline."""
    gateways = [build_gateway(provider, http_client=http_client) for provider in settings.providers]
    selector = ModelSelector(gateways=gateways)
    orchestrator = RequestOrchestrator(
        selector,
        config=settings.orchestrator,
        metrics_sink=PrometheusMetricsSink(),
    )
    classifier = CompletionContextClassifier(
        usage_pattern_capacity=settings.completion.usage_pattern_capacity,
    )
    ranker = RelevanceRanker(settings.ranking)
    completion_service = CompletionService(
        classifier,
        ranker,
        orchestrator=orchestrator,
        config=settings.completion,
    )
    logger.info(
        "services_built",
        providers=[gateway.provider_id for gateway in gateways],
        models=[model.model_id for model in selector.get_available_models()],
        max_concurrent_requests=settings.orchestrator.max_concurrent_requests,
    )
    return Services(
        settings=settings,
        selector=selector,
        orchestrator=orchestrator,
        classifier=classifier,
        ranker=ranker,
        completions=completion_service,
    )


app = FastAPI(
    title="CodeIntel Completion & Assistance API",
    description="Code completion ranking and AI request orchestration",
    version="1.0.0"
)

# CORS for local dev; restrict in production
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Add trace ID middleware (must be after CORS middleware)
app.add_middleware(TraceIDMiddleware)

# Instrument FastAPI with OpenTelemetry (creates automatic spans for HTTP requests)
instrument_fastapi(app)


@app.on_event("startup")
async def startup_event():
    """Initialize services on application startup."""
    logger.info("app_startup_started")

    # Tests may install their own service bundle before startup
    if getattr(app.state, "services", None) is None:
        app.state.services = build_services(settings)

    if not app.state.services.selector.get_gateways():
        logger.warning(
            "app_startup_no_ai_backends",
            message="No AI providers configured. Completions will use local ranking only.",
        )

    logger.info("app_startup_completed")


@app.on_event("shutdown")
async def shutdown_event():
    """Cleanup resources on application shutdown."""
    logger.info("app_shutdown_started")
    services = getattr(app.state, "services", None)
    if services is not None:
        await services.aclose()
    shutdown_tracing()
    logger.info("app_shutdown_completed")


def _error_response(status_code: int, content: dict, trace_id: Optional[str]) -> JSONResponse:
    response = JSONResponse(status_code=status_code, content=content)
    if trace_id:
        response.headers["X-Trace-ID"] = trace_id
    return response


# Error handlers
@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    """Handle HTTP exceptions."""
    start_time = getattr(request.state, "start_time", time.time())
    duration = time.time() - start_time

    trace_id = get_trace_id() or get_trace_id_from_context()

    set_span_status(StatusCode.ERROR if exc.status_code >= 500 else StatusCode.OK, exc.detail)

    # Record metrics for HTTP exceptions (4xx errors)
    record_http_request(
        method=request.method,
        endpoint=request.url.path,
        status_code=exc.status_code,
        duration_seconds=duration,
    )

    logger.warning(
        "http_exception",
        status_code=exc.status_code,
        detail=exc.detail,
        path=request.url.path,
        method=request.method,
    )
    return _error_response(
        exc.status_code,
        {
            "detail": exc.detail,
            "status_code": exc.status_code,
            "trace_id": trace_id,
        },
        trace_id,
    )


@app.exception_handler(AIError)
async def ai_exception_handler(request: Request, exc: AIError):
    """Map classified AI failures to HTTP responses."""
    status_code = status_code_for(exc)
    trace_id = get_trace_id() or get_trace_id_from_context()

    set_span_status(StatusCode.ERROR, exc.message)

    logger.warning(
        "ai_exception",
        status_code=status_code,
        error_code=exc.code.value,
        retryable=exc.retryable,
        request_id=exc.request_id,
        path=request.url.path,
        method=request.method,
    )
    content = {
        "detail": exc.message,
        "status_code": status_code,
        "code": exc.code.value,
        "retryable": exc.retryable,
        "trace_id": trace_id,
    }
    response = _error_response(status_code, content, trace_id)
    retry_after_ms = getattr(exc, "retry_after_ms", None)
    if status_code == 429 and retry_after_ms:
        response.headers["Retry-After"] = str(max(1, int(retry_after_ms / 1000)))
    return response


@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception):
    """Handle general exceptions."""
    trace_id = get_trace_id() or get_trace_id_from_context()

    record_exception(exc)
    set_span_status(StatusCode.ERROR, str(exc))

    logger.error(
        "unhandled_exception",
        error=str(exc),
        error_type=type(exc).__name__,
        path=request.url.path,
        method=request.method,
        exc_info=True,
    )
    return _error_response(
        500,
        {
            "detail": "Internal server error",
            "status_code": 500,
            "trace_id": trace_id,
        },
        trace_id,
    )


# Include routers
app.include_router(health.router, prefix="/health", tags=["Health"])
app.include_router(completions.router, prefix="/completions", tags=["Completions"])
app.include_router(assist.router, prefix="/assist", tags=["Assist"])
app.include_router(feedback.router, prefix="/feedback", tags=["Feedback"])
app.include_router(metrics.router, prefix="/metrics", tags=["Metrics"])
