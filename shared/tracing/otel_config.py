"""OpenTelemetry configuration for distributed tracing.

Spans are exported over OTLP/HTTP to a collector. Until
``configure_tracing`` is called the global no-op provider is in effect,
so instrumented code runs unchanged in tests and one-off scripts.
"""

import functools
from typing import Any, Callable, TypeVar

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.sdk.trace.sampling import ParentBased, TraceIdRatioBased
from opentelemetry.trace import Status, StatusCode

F = TypeVar("F", bound=Callable[..., Any])


def configure_tracing(
    service_name: str,
    otlp_endpoint: str = "http://otel-collector:4318/v1/traces",
    sampling_rate: float = 0.1,
    service_version: str = "1.0.0",
) -> TracerProvider:
    """Configure OpenTelemetry tracing for the service.

    Args:
        service_name: Name of the service (e.g., "cron-worker")
        otlp_endpoint: OTLP/HTTP traces endpoint of the collector
        sampling_rate: Sampling rate for root spans (0.0 to 1.0)
        service_version: Reported ``service.version``

    Returns:
        Configured TracerProvider
    """
    resource = Resource(
        attributes={
            "service.name": service_name,
            "service.namespace": "cron-readiness",
            "service.version": service_version,
        }
    )

    sampler = ParentBased(TraceIdRatioBased(max(0.0, min(1.0, sampling_rate))))
    provider = TracerProvider(resource=resource, sampler=sampler)
    provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=otlp_endpoint)))

    trace.set_tracer_provider(provider)

    return provider


def get_tracer(name: str) -> trace.Tracer:
    """Get a tracer instance.

    Args:
        name: Tracer name (typically __name__)

    Returns:
        Tracer instance
    """
    return trace.get_tracer(name)


def trace_attempt(span_name: str) -> Callable[[F], F]:
    """Open a span around an executor's ``execute(context)``.

    The span is a child of the runner's ``cron.run`` span, so every attempt
    of a run shows up separately with its number and outcome.
    """

    def decorator(func: F) -> F:
        @functools.wraps(func)
        async def wrapper(self: Any, context: Any, *args: Any, **kwargs: Any) -> Any:
            tracer = get_tracer(func.__module__)
            attributes = {
                "cron.job": context.job_name,
                "cron.run_key": context.run_key,
                "cron.attempt": context.attempt,
            }
            with tracer.start_as_current_span(span_name, attributes=attributes) as span:
                try:
                    result = await func(self, context, *args, **kwargs)
                except Exception as exc:
                    span.set_attribute("cron.retryable", bool(getattr(exc, "retryable", False)))
                    span.set_status(Status(StatusCode.ERROR, str(exc)))
                    raise
                span.set_status(Status(StatusCode.OK))
                return result

        return wrapper  # type: ignore

    return decorator


class TracingMixin:
    """Mixin to add tracing capabilities to classes."""

    @property
    def tracer(self) -> trace.Tracer:
        """Tracer named after the concrete class's module."""
        return get_tracer(self.__class__.__module__)
