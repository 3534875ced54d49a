"""
FastAPI application for the cron worker's status and control API.

This module provides:
- Health and readiness endpoints
- Job listing, run history and manual triggers
- Dead-letter queue inspection
- Request logging and Prometheus metrics

The app does not own the scheduler: ``cron_worker.main`` builds the
engine and serves ``create_app(engine)`` with uvicorn on the same loop.
"""

import time
from typing import Dict, Optional

import structlog
from fastapi import FastAPI, Request, Response, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse
from prometheus_client import REGISTRY, CollectorRegistry
from starlette.exceptions import HTTPException as StarletteHTTPException

from api.src.config import Settings, get_settings
from api.src.middleware.logging import RequestLoggingMiddleware
from api.src.routers.jobs import dlq_router, jobs_router
from cron_worker.scheduler.engine import CronEngine
from shared.metrics import CONTENT_TYPE_LATEST, get_metrics_handler
from shared.models import HealthStatus, ReadinessReport, ServiceInfo

logger = structlog.get_logger(__name__)


def create_app(
    engine: Optional[CronEngine],
    settings: Optional[Settings] = None,
    registry: CollectorRegistry = REGISTRY,
) -> FastAPI:
    """
    Build the status API around a (possibly not yet started) engine.

    Args:
        engine: Scheduler to report on and trigger jobs through
        settings: API settings (defaults to the cached environment settings)
        registry: Prometheus registry exposed on /metrics

    Returns:
        FastAPI application
    """
    settings = settings or get_settings()

    app = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        description="Status and control API of a cron worker instance.",
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        debug=settings.debug,
    )
    app.state.engine = engine
    app.state.settings = settings
    app.state.started_at = time.monotonic()

    # ========================================================================
    # Middleware
    # ========================================================================

    if settings.cors_enabled:
        logger.info("configuring_cors", origins=settings.cors_origins)
        app.add_middleware(
            CORSMiddleware,
            allow_origins=settings.cors_origins,
            allow_methods=["GET", "POST"],
            allow_headers=["*"],
        )

    app.add_middleware(RequestLoggingMiddleware)

    # ========================================================================
    # Exception Handlers
    # ========================================================================

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        """Handle request validation errors."""
        logger.warning("validation_error", path=request.url.path, errors=exc.errors())
        return JSONResponse(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            content={"detail": exc.errors()}
        )

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException):
        """Handle HTTP exceptions."""
        logger.warning(
            "http_exception",
            path=request.url.path,
            status_code=exc.status_code,
            detail=exc.detail
        )
        return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail})

    @app.exception_handler(Exception)
    async def general_exception_handler(request: Request, exc: Exception):
        """Handle unexpected exceptions."""
        logger.error("unexpected_exception", path=request.url.path, error=str(exc), exc_info=True)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"detail": "Internal server error"}
        )

    # ========================================================================
    # Health, Readiness and Metrics
    # ========================================================================

    @app.get("/health", tags=["Health"], response_model=ServiceInfo)
    async def health_check() -> ServiceInfo:
        """Liveness: answers as long as the process serves HTTP."""
        return ServiceInfo(
            service_name=settings.app_name,
            version=settings.app_version,
            status=HealthStatus.HEALTHY,
            uptime_seconds=time.monotonic() - app.state.started_at,
            instance_id=engine.runner.instance_id if engine is not None else "unknown",
        )

    @app.get("/ready", tags=["Health"])
    async def readiness_check() -> JSONResponse:
        """
        Readiness: the scheduler is running and the lock backend answers.

        Returns 503 with the per-check status otherwise.
        """
        checks: Dict[str, HealthStatus] = {
            "scheduler": HealthStatus.UNHEALTHY,
            "lock_backend": HealthStatus.UNHEALTHY,
        }

        if engine is not None:
            if engine.running:
                checks["scheduler"] = HealthStatus.HEALTHY
            try:
                if await engine.runner.lock_backend.healthy():
                    checks["lock_backend"] = HealthStatus.HEALTHY
            except Exception as e:
                logger.error("lock_backend_health_check_failed", error=str(e))

        ready = all(check == HealthStatus.HEALTHY for check in checks.values())
        report = ReadinessReport(ready=ready, service_name=settings.app_name, checks=checks)

        return JSONResponse(
            status_code=status.HTTP_200_OK if ready else status.HTTP_503_SERVICE_UNAVAILABLE,
            content=report.model_dump(mode="json"),
        )

    metrics_handler = get_metrics_handler(registry)

    @app.get("/metrics", tags=["Monitoring"], response_class=PlainTextResponse)
    async def metrics() -> Response:
        """Prometheus metrics in text exposition format."""
        return Response(content=metrics_handler(), media_type=CONTENT_TYPE_LATEST)

    app.include_router(jobs_router)
    app.include_router(dlq_router)

    logger.info("api_app_created", app_name=settings.app_name, version=settings.app_version)
    return app
