"""Structured logging configuration using structlog.

JSON log lines carry the service name, environment, the job/run context bound
by the runner and, when a span is active, the OpenTelemetry trace ids.
"""

import logging
import os
import sys
from contextlib import contextmanager
from typing import Any, Iterator, Optional

import structlog
from opentelemetry import trace
from structlog.types import EventDict, Processor

APP_NAME = "cron-readiness"

# Third-party loggers that are too chatty at INFO
NOISY_LOGGERS = ("kafka", "aiohttp.access", "asyncio")


def add_app_context(logger: logging.Logger, method_name: str, event_dict: EventDict) -> EventDict:
    """Add application context to log entries.

    Args:
        logger: The logger instance
        method_name: The logging method name
        event_dict: The event dictionary

    Returns:
        Updated event dictionary with application context
    """
    event_dict["app"] = APP_NAME
    event_dict["environment"] = os.environ.get("APP_ENV", "development")
    return event_dict


def add_trace_context(logger: logging.Logger, method_name: str, event_dict: EventDict) -> EventDict:
    """Attach the current trace and span ids when a span is recording."""
    span = trace.get_current_span()
    if span.is_recording():
        span_context = span.get_span_context()
        event_dict["trace_id"] = format(span_context.trace_id, "032x")
        event_dict["span_id"] = format(span_context.span_id, "016x")
    return event_dict


def configure_logging(
    log_level: str = "INFO",
    json_logs: bool = True,
    service_name: Optional[str] = None,
    instance_id: Optional[str] = None,
) -> None:
    """Configure structlog and route stdlib logging to the same stream.

    Args:
        log_level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_logs: JSON lines when true, coloured console output otherwise
        service_name: Bound as ``service`` on every entry
        instance_id: Bound as ``instance`` on every entry, so lines from
            several workers can be told apart after aggregation
    """
    level = getattr(logging, log_level.upper(), logging.INFO)

    processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        add_app_context,
        add_trace_context,
    ]
    processors.append(structlog.processors.JSONRenderer() if json_logs else structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    # Utilities, uvicorn and kafka-python log through stdlib
    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level)
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))

    context = {}
    if service_name:
        context["service"] = service_name
    if instance_id:
        context["instance"] = instance_id
    if context:
        structlog.contextvars.bind_contextvars(**context)


@contextmanager
def bound_context(**kwargs: Any) -> Iterator[None]:
    """Bind context variables for the duration of a ``with`` block.

    Each asyncio task has its own context copy, so concurrent job runs
    do not leak their ``job``/``run_key`` into each other.
    """
    with structlog.contextvars.bound_contextvars(**kwargs):
        yield
