"""Shared Pydantic models."""

from .common import HealthStatus, ReadinessReport, ServiceInfo

__all__ = ["HealthStatus", "ReadinessReport", "ServiceInfo"]
