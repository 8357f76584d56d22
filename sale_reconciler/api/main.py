"""
Main FastAPI application.

Payment reconciliation API with:
- CORS configuration
- Domain error mapping
- Request ID tracking
- Structured logging
- Prometheus metrics

Run with the application factory:

    uvicorn sale_reconciler.api.main:create_app --factory
"""
import time
import uuid
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Optional

import structlog
from fastapi import FastAPI, Request, Response, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from ..config import Settings, get_settings
from ..container import ServiceContainer, build_container
from ..core.exceptions import SaleReconcilerError
from ..monitoring.logging import (
    bind_request_context,
    clear_request_context,
    setup_logging,
)
from ..workers.expiration_worker import ExpirationScheduler
from .routes import monitoring_router, sales_router, webhook_router

logger = structlog.get_logger(__name__)


def create_app(
    settings: Optional[Settings] = None,
    container: Optional[ServiceContainer] = None,
) -> FastAPI:
    """
    Build the application.

    Args:
        settings: Settings to use (defaults to ``get_settings()``)
        container: Pre-wired services; when given, the lifespan neither
            builds nor closes services and does not start the scheduler
    """
    settings = settings or get_settings()
    if container is None:
        setup_logging(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, Any]:
        logger.info(
            "application_startup",
            app_name=settings.app_name,
            env=settings.app_env,
        )
        if container is not None:
            app.state.container = container
            yield
            return

        try:
            app.state.container = await build_container(settings)
        except Exception as e:
            logger.error("service_initialization_failed", error=str(e))
            raise

        scheduler: Optional[ExpirationScheduler] = None
        if settings.expiration_scheduler_enabled and not settings.embedded_scheduler_active():
            logger.warning(
                "expiration_scheduler_not_embedded",
                api_workers=settings.api_workers,
                hint="run sale-reconciler-expiration as a single separate process",
            )
        elif settings.embedded_scheduler_active():
            scheduler = ExpirationScheduler(
                app.state.container.expiration_job,
                hour=settings.expiration_hour,
                minute=settings.expiration_minute,
                timezone=settings.expiration_timezone,
            )
            scheduler.start()

        yield

        logger.info("application_shutdown")
        if scheduler is not None:
            await scheduler.stop()
        await app.state.container.close()

    app = FastAPI(
        title="Sale Reconciler",
        description=(
            "Payment-lifecycle reconciliation for sales: signed gateway webhooks, "
            "guarded status transitions, atomic stock decrement and expiration."
        ),
        version="1.0.0",
        lifespan=lifespan,
    )
    if container is not None:
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
        """Bind a request id (caller's x-request-id when present) to every log line."""
        request_id = request.headers.get("x-request-id") or str(uuid.uuid4())
        start_time = time.time()

        bind_request_context(
            request_id=request_id,
            method=request.method,
            path=request.url.path,
        )

        try:
            response = await call_next(request)
            response.headers["X-Request-ID"] = request_id
            logger.info(
                "request_completed",
                status_code=response.status_code,
                duration_seconds=time.time() - start_time,
            )
            return response

        except Exception as e:
            logger.error(
                "request_failed",
                error=str(e),
                duration_seconds=time.time() - start_time,
            )
            raise

        finally:
            clear_request_context()

    @app.exception_handler(SaleReconcilerError)
    async def domain_exception_handler(
        request: Request, exc: SaleReconcilerError
    ) -> JSONResponse:
        log = logger.warning if exc.http_status < 500 else logger.error
        log(
            "request_rejected",
            error_code=exc.error_code,
            error=exc.message,
            status_code=exc.http_status,
            **{k: v for k, v in exc.context.items() if isinstance(v, (str, int))},
        )
        return JSONResponse(status_code=exc.http_status, content=exc.to_dict())

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.error(
            "unhandled_exception",
            error=str(exc),
            error_type=type(exc).__name__,
            path=request.url.path,
        )
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={
                "error": {
                    "code": "internal_error",
                    "message": "An unexpected error occurred. Please try again later.",
                }
            },
        )

    app.include_router(webhook_router)
    app.include_router(sales_router)
    app.include_router(monitoring_router)

    @app.get("/", tags=["root"])
    async def root() -> dict[str, Any]:
        return {
            "service": settings.app_name,
            "version": "1.0.0",
            "environment": settings.app_env,
            "health": "/health",
            "metrics": "/metrics",
        }

    return app


if __name__ == "__main__":
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "sale_reconciler.api.main:create_app",
        factory=True,
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.debug,
        workers=settings.api_workers if not settings.debug else 1,
        log_level=settings.log_level.lower(),
    )
