"""Structured logging module using structlog."""

from .structured_logger import bound_context, configure_logging

__all__ = ["bound_context", "configure_logging"]
