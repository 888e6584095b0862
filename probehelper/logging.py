"""
Structured logging configuration using structlog.

Standardized log format:
{
    "ts": "2025-11-18T04:30:00.123456Z",
    "level": "info",
    "service": "probe-helper",
    "correlation_id": "probe-event-id",
    "event": "probe.ack",
    "module": "helper",
    "function": "probe",
    "line": 42,
    ...additional context...
}
"""
import structlog
import logging
from typing import Any

_SERVICE_NAME = "probe-helper"


def add_service_name(logger: Any, method_name: str, event_dict: dict) -> dict:
    """Add service name to all log entries."""
    event_dict["service"] = _SERVICE_NAME
    return event_dict


def rename_callsite_keys(logger: Any, method_name: str, event_dict: dict) -> dict:
    """Rename structlog's call-site keys to function/line."""
    if "func_name" in event_dict:
        event_dict["function"] = event_dict.pop("func_name")
    if "lineno" in event_dict:
        event_dict["line"] = event_dict.pop("lineno")
    return event_dict


def setup_logging(json_output: bool = True, service_name: str = "probe-helper", level: int | str = logging.INFO):
    """
    Configure structured logging with standardized fields.

    Args:
        json_output: If True, output JSON logs. If False, use console format.
        service_name: Name of the service (for multi-service deployments).
        level: Minimum level that is emitted, as a number or a name ("debug").
    """
    global _SERVICE_NAME
    _SERVICE_NAME = service_name
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())

    shared_processors = [
        # correlation_id and friends are bound by CorrelationIdMiddleware
        structlog.contextvars.merge_contextvars,
        add_service_name,
        structlog.processors.TimeStamper(fmt="iso", key="ts"),
        structlog.processors.add_log_level,
        structlog.processors.CallsiteParameterAdder(
            {
                structlog.processors.CallsiteParameter.MODULE,
                structlog.processors.CallsiteParameter.FUNC_NAME,
                structlog.processors.CallsiteParameter.LINENO,
            }
        ),
        rename_callsite_keys,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    renderer = structlog.processors.JSONRenderer() if json_output else structlog.dev.ConsoleRenderer()
    structlog.configure(
        processors=shared_processors + [renderer],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(format="%(message)s", level=level)
    # uvicorn runs with log_config=None; drop its handlers so lines are not doubled
    logging.getLogger("uvicorn.error").handlers = []
    logging.getLogger("uvicorn.access").handlers = []


def get_logger():
    """Get a configured structlog logger."""
    return structlog.get_logger()
