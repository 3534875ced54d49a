"""Distributed tracing module using OpenTelemetry."""

from .otel_config import TracingMixin, configure_tracing, get_tracer, trace_attempt

__all__ = ["TracingMixin", "configure_tracing", "get_tracer", "trace_attempt"]
