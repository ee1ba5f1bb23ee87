"""
FastAPI application for the payment reconciliation engine.

Serves the order endpoints the payment view polls, the administrator
endpoints, the Midtrans notification endpoint, and health/metrics probes.
Domain refusals raised by the service layer become
``{"success": false, "error": ..., "code": ...}`` bodies.
"""
import time
import uuid
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator

import structlog
from fastapi import FastAPI, Request, Response, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from payment_reconciliation import __version__
from payment_reconciliation.config import Settings, get_settings
from payment_reconciliation.core.exceptions import ReconciliationError
from payment_reconciliation.database.connection import close_db, init_db
from payment_reconciliation.monitoring.logging import setup_logging

from .routes import (
    admin_router,
    close_clients,
    monitoring_router,
    order_router,
    settings_router,
    webhook_router,
)

REQUEST_ID_HEADER = "X-Request-ID"

setup_logging()
logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, Any]:
    """Create tables on startup; release gateway, Redis and database on shutdown."""
    settings = get_settings()
    logger.info(
        "application_startup",
        app_name=settings.app_name,
        env=settings.app_env,
        sandbox=settings.is_sandbox,
    )

    try:
        await init_db()
    except Exception as e:
        logger.error("database_initialization_failed", error=str(e))
        raise
    logger.info("database_initialized")

    yield

    logger.info("application_shutdown")
    await close_clients()
    await close_db()
    logger.info("database_connections_closed")


async def reconciliation_error_handler(request: Request, exc: ReconciliationError) -> JSONResponse:
    logger.info(
        "request_refused",
        error_code=exc.error_code,
        order_number=exc.order_number,
        http_status=exc.http_status,
    )
    return JSONResponse(status_code=exc.http_status, content=exc.to_dict())


async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
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
            "error": "Internal server error",
            "code": "internal_error",
        },
    )


def create_app(settings: Settings | None = None) -> FastAPI:
    """
    Build the application.

    Args:
        settings: Defaults to the cached environment settings
    """
    settings = settings or get_settings()

    app = FastAPI(
        title="Payment Reconciliation Engine",
        description=(
            "Decides with finality whether an order has been paid, merging gateway "
            "webhooks, client polling and pull-based sync into one monotonic lifecycle."
        ),
        version=__version__,
        lifespan=lifespan,
        docs_url=None if settings.is_production else "/docs",
        redoc_url=None if settings.is_production else "/redoc",
        openapi_url="/openapi.json",
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.get_allowed_origins_list(),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=[REQUEST_ID_HEADER],
    )

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next: Any) -> Response:
        """Bind a request id (the caller's, if sent) and log timing."""
        request_id = request.headers.get(REQUEST_ID_HEADER) or str(uuid.uuid4())
        started = time.perf_counter()
        structlog.contextvars.bind_contextvars(
            request_id=request_id,
            method=request.method,
            path=request.url.path,
        )
        try:
            response = await call_next(request)
        except Exception as e:
            logger.error(
                "request_failed",
                error=str(e),
                duration_seconds=time.perf_counter() - started,
            )
            raise
        finally:
            structlog.contextvars.clear_contextvars()

        response.headers[REQUEST_ID_HEADER] = request_id
        logger.info(
            "request_completed",
            request_id=request_id,
            status_code=response.status_code,
            duration_seconds=time.perf_counter() - started,
        )
        return response

    app.add_exception_handler(ReconciliationError, reconciliation_error_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)

    app.include_router(order_router)
    app.include_router(admin_router)
    app.include_router(webhook_router)
    app.include_router(settings_router)
    app.include_router(monitoring_router)

    @app.get("/", tags=["root"])
    async def root() -> dict[str, Any]:
        return {
            "service": settings.app_name,
            "version": __version__,
            "environment": settings.app_env,
            "sandbox": settings.is_sandbox,
            "docs": "/docs",
            "health": "/health",
            "metrics": "/metrics",
        }

    return app


app = create_app()
