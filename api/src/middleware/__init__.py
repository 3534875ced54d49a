"""FastAPI middleware components.

Request logging with correlation IDs and HTTP request metrics.
"""

from api.src.middleware.logging import RequestLoggingMiddleware

__all__ = ["RequestLoggingMiddleware"]
