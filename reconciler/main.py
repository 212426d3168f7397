"""Subscription Reconciler: FastAPI application entry point."""

import asyncio
import signal
import uuid
from contextlib import asynccontextmanager, suppress

# configure_structlog runs before any other reconciler import: loggers created
# earlier would keep the unconfigured processor chain cached.
from reconciler.core.logging import configure_structlog
from reconciler.core.config import get_settings as _get_settings_early

_early_settings = _get_settings_early()
configure_structlog(
    log_level="DEBUG" if _early_settings.debug else "INFO",
    json_logs=not _early_settings.debug,
)

import structlog

from fastapi import FastAPI, Request, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from reconciler.api.routes import api_router
from reconciler.core.config import get_settings
from reconciler.core.exceptions import ReconcilerError, ResourceLimitExceeded
from reconciler.db import init_db, close_db, init_redis, close_redis
from reconciler.db.seed import seed_plan_tiers
from reconciler.middleware.correlation import (
    setup_correlation_middleware,
    get_correlation_id,
)
from reconciler.queue.worker import run_worker

logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup/shutdown events."""
    # SIGTERM flips this so the health check returns 503 while connections drain
    app.state.shutting_down = False

    def handle_sigterm(signum, frame):
        app.state.shutting_down = True
        logger.info("sigterm_received", action="health_check_503_draining_connections")

    signal.signal(signal.SIGTERM, handle_sigterm)

    # Startup
    settings = get_settings()
    logger.info("startup_begin", app_name=settings.app_name, debug=settings.debug)

    await init_db()
    logger.info("db_initialized")

    await init_redis()
    logger.info("redis_initialized")

    await seed_plan_tiers()
    logger.info("plan_tiers_seeded")

    worker_task = None
    if settings.worker_enabled:
        worker_task = asyncio.create_task(
            run_worker(settings.worker_poll_interval, settings.expiry_sweep_interval)
        )
        logger.info("worker_task_started")

    yield

    # Shutdown
    logger.info("shutdown_begin")
    if worker_task is not None:
        worker_task.cancel()
        with suppress(asyncio.CancelledError):
            await worker_task
    await close_redis()
    await close_db()
    logger.info("shutdown_complete")


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Global exception handler for HTTPException with debug_id tracking.

    Logs errors server-side with full context, returns sanitized response to client.
    """
    debug_id = str(uuid.uuid4())

    logger.error(
        "http_exception",
        status_code=exc.status_code,
        debug_id=debug_id,
        correlation_id=get_correlation_id(),
        path=request.url.path,
        method=request.method,
        detail=exc.detail,
    )

    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.detail, "debug_id": debug_id},
    )


async def reconciler_exception_handler(request: Request, exc: ReconcilerError) -> JSONResponse:
    """Domain errors carry their own status. Server-side failures get the class's generic detail."""
    debug_id = str(uuid.uuid4())
    server_error = exc.status_code >= 500

    log = logger.error if server_error else logger.warning
    log(
        "reconciler_error",
        status_code=exc.status_code,
        debug_id=debug_id,
        correlation_id=get_correlation_id(),
        path=request.url.path,
        method=request.method,
        error=str(exc),
        error_type=type(exc).__name__,
        exc_info=server_error,
    )

    content = {"detail": exc.detail if server_error else str(exc), "debug_id": debug_id}
    if isinstance(exc, ResourceLimitExceeded):
        content.update(errors=exc.errors, usage=exc.usage, limits=exc.limits)
    return JSONResponse(status_code=exc.status_code, content=content)


async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Global exception handler for unhandled errors with debug_id tracking.

    Logs full exception with traceback, returns generic 500 to client.
    """
    debug_id = str(uuid.uuid4())

    logger.error(
        "unhandled_exception",
        debug_id=debug_id,
        correlation_id=get_correlation_id(),
        path=request.url.path,
        method=request.method,
        error=str(exc),
        error_type=type(exc).__name__,
        exc_info=True,
    )

    return JSONResponse(
        status_code=500,
        content={"detail": "Internal server error", "debug_id": debug_id},
    )


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()

    app = FastAPI(
        title=settings.app_name,
        description="Reconciles subscription state from Stripe, PayPal, Paystack and Flutterwave webhooks",
        version="0.1.0",
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=[settings.frontend_url, "http://localhost:3000"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Correlation ID middleware (runs first on incoming requests)
    setup_correlation_middleware(app)

    app.exception_handler(HTTPException)(http_exception_handler)
    app.exception_handler(ReconcilerError)(reconciler_exception_handler)
    app.exception_handler(Exception)(generic_exception_handler)

    app.include_router(api_router, prefix="/api")

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "reconciler.main:app",
        host="0.0.0.0",
        port=8000,
        reload=True,
    )
