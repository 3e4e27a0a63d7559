"""
TutorMeter - Main API Server

FastAPI server exposing the metering service.

Features:
- Session start gated by the monthly session limit
- Usage reports over the metrics API, forwarded realtime events and saved
  transcript messages
- Token and session limit checks, monthly usage summary
- Background abandonment of idle sessions
- Full observability (metrics, tracing, logging)

Configuration comes from the environment (see tutormeter.config).
"""

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from . import __version__
from .api import HealthResponse, get_request_id, metering_router
from .config import MeteringSettings
from .core.errors import ErrorDetails, ErrorType, InternalError, MeteringException
from .db.store import guarded
from .observability import (
    ObservabilityMiddleware,
    get_logger,
    metrics_endpoint,
    setup_observability,
)
from .usage import MeteringService

logger = get_logger("tutormeter.server")


# ============================================================
# Lifespan management
# ============================================================

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage application lifespan - startup and shutdown."""
    settings: MeteringSettings = app.state.settings

    # Observability first so startup is logged
    observability = setup_observability(
        service_name="tutormeter",
        service_version=__version__,
        log_level=settings.log_level,
        log_format=settings.log_format,
    )

    service: Optional[MeteringService] = app.state.metering
    owns_service = service is None
    if owns_service:
        service = MeteringService.from_settings(settings)

    try:
        await service.start()
    except Exception as e:
        logger.error(
            "Metering store could not be started",
            store_backend=settings.store_backend.value,
            error=str(e),
            error_type=type(e).__name__,
        )
        raise

    app.state.metering = service
    logger.info(
        "TutorMeter server ready",
        version=__version__,
        store_backend=settings.store_backend.value,
        default_model=settings.default_model,
    )

    try:
        yield
    finally:
        try:
            await service.stop()
        finally:
            if owns_service:
                app.state.metering = None
            if "tracing" in observability:
                observability["tracing"].shutdown()
            logger.info("TutorMeter server stopped")


# ============================================================
# FastAPI App
# ============================================================

def create_app(
    settings: Optional[MeteringSettings] = None,
    service: Optional[MeteringService] = None,
) -> FastAPI:
    """
    Build the application.

    A pre-built service (e.g. over an in-memory store) may be injected;
    otherwise one is created from `settings` at startup.
    """
    if settings is None:
        settings = service.settings if service is not None else MeteringSettings.from_env()

    app = FastAPI(
        title="TutorMeter",
        description="Usage metering and monthly quotas for realtime AI tutoring sessions",
        version=__version__,
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
    )
    app.state.settings = settings
    app.state.metering = service

    # First added = innermost
    app.add_middleware(ObservabilityMiddleware, service_name="tutormeter")

    if settings.cors_allow_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=settings.cors_allow_origins,
            allow_credentials="*" not in settings.cors_allow_origins,
            allow_methods=["GET", "POST"],
            allow_headers=["*"],
        )

    app.include_router(metering_router)
    _register_core_endpoints(app)
    _register_error_handlers(app)
    return app


# ============================================================
# Core Endpoints (not in routes)
# ============================================================

def _register_core_endpoints(app: FastAPI) -> None:

    @app.get("/health", response_model=HealthResponse)
    async def health_check(request: Request):
        """Health check endpoint. Reports a degraded store instead of failing."""
        settings: MeteringSettings = request.app.state.settings
        service: Optional[MeteringService] = request.app.state.metering

        store_ok = False
        if service is not None:
            try:
                store_ok = await guarded(
                    service.store.ping(),
                    timeout=settings.store_timeout_seconds,
                    operation="health.ping",
                )
            except MeteringException as e:
                logger.warning("Health check store ping failed", error_code=e.code)

        return HealthResponse(
            status="healthy" if store_ok else "degraded",
            version=__version__,
            store_backend=settings.store_backend.value,
            store="ok" if store_ok else "unavailable",
        )

    @app.get("/metrics")
    async def prometheus_metrics():
        """Prometheus metrics endpoint."""
        return metrics_endpoint()


# ============================================================
# Error handlers
# ============================================================

def _error_response(request_id: str, status_code: int, error: ErrorDetails) -> JSONResponse:
    error.request_id = request_id
    headers = {
        "X-Request-Id": request_id,
        "X-Error-Type": error.type.value,
        "X-Error-Code": error.code,
    }
    if error.retry_after:
        headers["Retry-After"] = str(error.retry_after)
    return JSONResponse(status_code=status_code, content=error.to_dict(), headers=headers)


def _register_error_handlers(app: FastAPI) -> None:

    @app.exception_handler(MeteringException)
    async def metering_exception_handler(request: Request, exc: MeteringException):
        """Handle all TutorMeter canonical errors."""
        if isinstance(exc, InternalError):
            logger.error(
                "Metering operation failed",
                error_code=exc.code,
                error=exc.error.message,
                details=exc.error.details,
            )
        return _error_response(get_request_id(request), exc.status_code, exc.error)

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        errors = [
            {
                "loc": [str(part) for part in err.get("loc", ())],
                "msg": err.get("msg", ""),
                "type": err.get("type", ""),
            }
            for err in exc.errors()
        ]
        param = ".".join(errors[0]["loc"][1:]) if errors else None
        error = ErrorDetails(
            code="invalid_request",
            message=errors[0]["msg"] if errors else "Invalid request",
            type=ErrorType.SEMANTIC,
            param=param or None,
            retryable=False,
            details={"errors": errors},
        )
        return _error_response(get_request_id(request), 422, error)

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException):
        """Handle standard HTTP exceptions (unknown routes, wrong methods)."""
        error = ErrorDetails(
            code="http_error",
            message=exc.detail if isinstance(exc.detail, str) else "HTTP error",
            type=ErrorType.SEMANTIC if exc.status_code < 500 else ErrorType.INFRA,
            retryable=exc.status_code >= 500,
        )
        return _error_response(get_request_id(request), exc.status_code, error)

    @app.exception_handler(Exception)
    async def general_exception_handler(request: Request, exc: Exception):
        """Handle unexpected exceptions."""
        logger.exception("Unhandled exception", error=str(exc), error_type=type(exc).__name__)
        error = ErrorDetails(
            code="internal_error",
            message="An unexpected error occurred",
            type=ErrorType.INFRA,
            retryable=True,
        )
        return _error_response(get_request_id(request), 500, error)


app = create_app()


# ============================================================
# Run server
# ============================================================

if __name__ == "__main__":
    import os

    import uvicorn

    uvicorn.run(
        "tutormeter.server:app",
        host=os.getenv("HOST", "0.0.0.0"),
        port=int(os.getenv("PORT", "8000")),
    )
