"""
Structured logging for codeintel.

Every entry is a structlog event: a snake_case event name plus keyword
fields. Three correlation ids ride along through context variables:

    trace_id        HTTP trace (X-Trace-ID, X-Request-ID, traceparent or new)
    request_id      one per HTTP request
    ai_request_id   the AIRequest the orchestrator is working on

The middleware binds the first two for the lifetime of a request; the
orchestrator and the assist route bind the third.
"""
import logging
import sys
import uuid
from contextvars import ContextVar
from typing import Callable, Optional, Tuple

import structlog
from structlog.types import EventDict, Processor, WrappedLogger

trace_id_var: ContextVar[Optional[str]] = ContextVar("trace_id", default=None)
request_id_var: ContextVar[Optional[str]] = ContextVar("request_id", default=None)
ai_request_id_var: ContextVar[Optional[str]] = ContextVar("ai_request_id", default=None)

DEFAULT_SERVICE_NAME = "codeintel_api"

_CORRELATION_FIELDS: Tuple[Tuple[str, ContextVar], ...] = (
    ("trace_id", trace_id_var),
    ("request_id", request_id_var),
    ("ai_request_id", ai_request_id_var),
)


def add_correlation_ids(logger: WrappedLogger, method_name: str, event_dict: EventDict) -> EventDict:
    """Copy bound correlation ids onto the entry; fields passed explicitly win."""
    for field, var in _CORRELATION_FIELDS:
        value = var.get()
        if value and field not in event_dict:
            event_dict[field] = value
    return event_dict


def service_field(service_name: str) -> Callable[[WrappedLogger, str, EventDict], EventDict]:
    def add_service(logger: WrappedLogger, method_name: str, event_dict: EventDict) -> EventDict:
        event_dict.setdefault("service", service_name)
        return event_dict

    return add_service


def configure_logging(
    log_level: str = "INFO",
    service_name: str = DEFAULT_SERVICE_NAME,
    json_output: bool = True,
) -> None:
    """
    Route structlog through the stdlib root logger.

    ``json_output`` selects JSON lines (containers) over the console renderer
    (local development).
    """
    renderer: Processor = structlog.processors.JSONRenderer() if json_output else structlog.dev.ConsoleRenderer()
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_log_level,
            structlog.stdlib.add_logger_name,
            add_correlation_ids,
            service_field(service_name or DEFAULT_SERVICE_NAME),
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, log_level.upper()),
    )


def get_logger(name: Optional[str] = None) -> structlog.BoundLogger:
    return structlog.get_logger(name)


def new_correlation_id() -> str:
    return str(uuid.uuid4())


def bind_http_ids(trace_id: Optional[str], request_id: Optional[str]) -> None:
    trace_id_var.set(trace_id)
    request_id_var.set(request_id)


def clear_http_ids() -> None:
    bind_http_ids(None, None)


def get_trace_id() -> Optional[str]:
    return trace_id_var.get()


def get_request_id() -> Optional[str]:
    return request_id_var.get()


def set_ai_request_id(ai_request_id: Optional[str]) -> None:
    ai_request_id_var.set(ai_request_id)


def get_ai_request_id() -> Optional[str]:
    return ai_request_id_var.get()
