"""Request logging and HTTP metrics middleware."""

import time
import uuid

import structlog
from prometheus_client import Counter, Gauge, Histogram
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from shared.logging import bound_context

logger = structlog.get_logger(__name__)

http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "endpoint", "status"]
)

http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "endpoint"]
)

http_requests_in_progress = Gauge(
    "http_requests_in_progress",
    "HTTP requests currently in progress",
    ["method"]
)

QUIET_PATHS = ("/health", "/metrics")
UNMATCHED_ENDPOINT = "<unmatched>"


def _endpoint(request: Request) -> str:
    # Route template, not the raw path: /jobs/{name} rather than every job
    route = request.scope.get("route")
    path = getattr(route, "path", None)
    return path if path is not None else UNMATCHED_ENDPOINT


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Logs every request with a correlation ID and records HTTP metrics."""

    async def dispatch(self, request: Request, call_next):
        correlation_id = request.headers.get("X-Correlation-ID") or str(uuid.uuid4())
        method = request.method
        path = request.url.path
        quiet = path in QUIET_PATHS

        http_requests_in_progress.labels(method=method).inc()
        start_time = time.time()

        with bound_context(correlation_id=correlation_id):
            if not quiet:
                logger.info("request_started", method=method, path=path)

            try:
                response = await call_next(request)
            except Exception as e:
                duration = time.time() - start_time
                logger.error(
                    "request_failed",
                    method=method,
                    path=path,
                    error=str(e),
                    duration=f"{duration:.3f}s",
                    exc_info=True
                )
                raise
            finally:
                http_requests_in_progress.labels(method=method).dec()

            duration = time.time() - start_time
            endpoint = _endpoint(request)
            http_requests_total.labels(method=method, endpoint=endpoint, status=response.status_code).inc()
            http_request_duration_seconds.labels(method=method, endpoint=endpoint).observe(duration)

            if not quiet:
                logger.info(
                    "request_completed",
                    method=method,
                    path=path,
                    status_code=response.status_code,
                    duration=f"{duration:.3f}s"
                )

        response.headers["X-Correlation-ID"] = correlation_id
        return response
