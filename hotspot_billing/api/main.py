"""
Main FastAPI application.

Hotspot billing API with:
- CORS configuration
- Error handling
- Request ID tracking
- Structured logging
- Prometheus metrics
"""
import time
import uuid
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Dict, Optional

import structlog
from fastapi import FastAPI, Request, Response, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from hotspot_billing import __version__
from hotspot_billing.config import Settings, get_settings
from hotspot_billing.container import ServiceContainer
from hotspot_billing.core.errors import (
    PaymentInitiationError,
    PaymentNotFoundError,
    PaymentValidationError,
)
from hotspot_billing.core.notifier import PaymentNotifier
from hotspot_billing.integrations.mpesa_client import MpesaClient
from hotspot_billing.monitoring.logging import setup_logging

from .routes import (
    admin_router,
    monitoring_router,
    mpesa_router,
    payment_router,
    websocket_router,
)

logger = structlog.get_logger(__name__)


def _field_errors(exc: RequestValidationError) -> Dict[str, str]:
    errors: Dict[str, str] = {}
    for error in exc.errors():
        location = [str(part) for part in error.get("loc", ()) if part != "body"]
        errors[".".join(location) or "body"] = error.get("msg", "Invalid value")
    return errors


def register_exception_handlers(app: FastAPI) -> None:
    """Translate domain errors into structured JSON responses."""

    @app.exception_handler(PaymentValidationError)
    async def payment_validation_handler(request: Request, exc: PaymentValidationError) -> JSONResponse:
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={"success": False, "message": exc.message, "errors": exc.errors},
        )

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        errors = _field_errors(exc)
        logger.info("request_validation_failed", path=request.url.path, errors=errors)
        return JSONResponse(
            status_code=422,
            content={"success": False, "message": "Invalid request", "errors": errors},
        )

    @app.exception_handler(PaymentInitiationError)
    async def payment_initiation_handler(request: Request, exc: PaymentInitiationError) -> JSONResponse:
        status_code = (
            status.HTTP_504_GATEWAY_TIMEOUT if exc.is_timeout else status.HTTP_502_BAD_GATEWAY
        )
        return JSONResponse(
            status_code=status_code,
            content={"success": False, "message": exc.message},
        )

    @app.exception_handler(PaymentNotFoundError)
    async def payment_not_found_handler(request: Request, exc: PaymentNotFoundError) -> JSONResponse:
        return JSONResponse(
            status_code=status.HTTP_404_NOT_FOUND,
            content={"success": False, "message": str(exc)},
        )

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """Global exception handler for unhandled exceptions."""
        logger.error(
            "unhandled_exception",
            error=str(exc),
            error_type=type(exc).__name__,
            path=request.url.path,
        )
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={
                "success": False,
                "message": "An unexpected error occurred. Please try again later.",
            },
        )


def create_app(
    settings: Optional[Settings] = None,
    *,
    session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
    mpesa_client: Optional[MpesaClient] = None,
    notifier: Optional[PaymentNotifier] = None,
) -> FastAPI:
    """
    Build the FastAPI application.

    Args:
        settings: Application settings (loaded from the environment otherwise)
        session_factory: Existing session factory (tests share one database)
        mpesa_client: Existing M-Pesa client (tests inject a mock transport)
        notifier: Notification fan-out

    Returns:
        FastAPI: Configured application
    """
    settings = settings or get_settings()
    setup_logging(settings)

    container = ServiceContainer.build(
        settings,
        session_factory=session_factory,
        mpesa_client=mpesa_client,
        notifier=notifier,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, Any]:
        """
        Application lifespan manager.

        Handles startup and shutdown events.
        """
        logger.info(
            "application_startup",
            app_name=settings.app_name,
            env=settings.app_env,
            mpesa_environment=settings.mpesa_environment,
        )

        try:
            await container.startup()
            logger.info("database_initialized")
        except Exception as e:
            logger.error("database_initialization_failed", error=str(e))
            raise

        yield

        logger.info("application_shutdown")
        try:
            await container.shutdown()
        except Exception as e:
            logger.error("application_shutdown_error", error=str(e))

    app = FastAPI(
        title="Hotspot Billing API",
        description=(
            "WiFi hotspot billing with M-Pesa STK push. "
            "Features: payment initiation, idempotent callback reconciliation, "
            "stale payment recovery, revenue reporting and real-time updates."
        ),
        version=__version__,
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
    )
    app.state.container = container

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.get_allowed_origins_list(),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def add_request_id_middleware(request: Request, call_next: Any) -> Response:
        """
        Add request ID to all requests for tracing.

        Also adds timing information and structured logging context.
        """
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        start_time = time.monotonic()

        structlog.contextvars.bind_contextvars(
            request_id=request_id,
            method=request.method,
            path=request.url.path,
        )

        logger.info(
            "request_started",
            client_host=request.client.host if request.client else None,
        )

        try:
            response = await call_next(request)
            response.headers["X-Request-ID"] = request_id

            logger.info(
                "request_completed",
                status_code=response.status_code,
                duration_seconds=time.monotonic() - start_time,
            )
            return response

        except Exception as e:
            logger.error(
                "request_failed",
                error=str(e),
                duration_seconds=time.monotonic() - start_time,
            )
            raise

        finally:
            structlog.contextvars.clear_contextvars()

    register_exception_handlers(app)

    app.include_router(payment_router)
    app.include_router(mpesa_router)
    app.include_router(admin_router)
    app.include_router(monitoring_router)
    app.include_router(websocket_router)

    @app.get("/", tags=["root"])
    async def root() -> Dict[str, Any]:
        """Root endpoint with API information."""
        return {
            "service": settings.app_name,
            "version": __version__,
            "status": "operational",
            "environment": settings.app_env,
            "mpesaEnvironment": settings.mpesa_environment,
            "docs": "/docs",
            "health": "/health",
            "metrics": "/metrics",
        }

    return app


def run() -> None:
    """Run the API with uvicorn."""
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "hotspot_billing.api.main:create_app",
        factory=True,
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.debug,
        workers=settings.api_workers if not settings.debug else 1,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    run()
