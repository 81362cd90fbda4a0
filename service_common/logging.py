"""
Structured logging for the service-common runtime.

Components log through ``get_logger("service_common.<component>")``. Request
correlation (request id, tenant, user) is kept in structlog's context
variables, bound by the auth boundary and merged into every event logged
while the request is handled.
"""

import logging
import sys
import uuid
from typing import Any, Dict, Optional

import structlog
from opentelemetry import trace

_service_name: Optional[str] = None


def configure_logging(service_name: str, log_level: str = "info") -> None:
    """Install the JSON logging pipeline; called once by the runtime at startup."""
    global _service_name
    _service_name = service_name

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            add_service_context,
            add_trace_context,
            structlog.processors.JSONRenderer(),
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, log_level.upper(), logging.INFO),
    )


def add_service_context(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    if _service_name:
        event_dict.setdefault("service", _service_name)
    return event_dict


def add_trace_context(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Attach the active OpenTelemetry trace and span ids, if any."""
    span_context = trace.get_current_span().get_span_context()
    if span_context.is_valid:
        event_dict["trace_id"] = f"{span_context.trace_id:032x}"
        event_dict["span_id"] = f"{span_context.span_id:016x}"
    return event_dict


def bind_request_context(request_id: Optional[str] = None) -> str:
    """Start a fresh correlation context for one request.

    Anything bound by a previous request on the same context is dropped.
    Returns the request id, generated when the caller did not send one.
    """
    structlog.contextvars.clear_contextvars()
    request_id = request_id or str(uuid.uuid4())
    structlog.contextvars.bind_contextvars(request_id=request_id)
    return request_id


def bind_principal(tenant_id: str, user_id: Optional[str] = None) -> None:
    """Tag subsequent log events with the authenticated tenant and user."""
    structlog.contextvars.bind_contextvars(tenant_id=tenant_id)
    if user_id:
        structlog.contextvars.bind_contextvars(user_id=user_id)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)
