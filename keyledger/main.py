"""
keyledger API entry point.

    uvicorn keyledger.main:app

Single worker only: the key cache, cooldowns and in-flight markers live in
process memory.
"""

from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from keyledger import __version__
from keyledger.config import settings
from keyledger.core.errors import KeyLedgerError
from keyledger.core.errors.middleware import keyledger_error_handler
from keyledger.core.errors.registry import error_registry
from keyledger.core.log_middleware import CorrelationMiddleware
from keyledger.core.structured_logging import setup_logging
from keyledger.dependencies import build_services
from keyledger.routers import admin, health, interactions

# Initialize structured logging before any logger calls
setup_logging(log_dir=settings.log_dir, log_level=settings.log_level.upper())

logger = logging.getLogger(__name__)

API_TITLE = "keyledger API"

TAGS_METADATA = [
    {
        "name": "health",
        "description": "Liveness and store reachability. No authentication required.",
    },
    {
        "name": "interactions",
        "description": "Key panel interactions forwarded by the chat bot (redeem, script, device reset).",
    },
    {
        "name": "admin",
        "description": "Staff key, whitelist and denylist management. **Requires X-Admin-Token.**",
    },
]


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.
    Handles startup and shutdown events.
    """
    logger.info("Starting keyledger API v%s (store=%s)...", __version__, settings.store_backend)

    if len(error_registry) == 0:
        error_registry.load()

    services = build_services(settings)
    app.state.services = services
    await services.sweeper.start()
    logger.info("Idle sweeper started (interval=%ss)", settings.sweep_interval_s)

    yield

    logger.info("Shutting down keyledger API...")
    await services.close()
    logger.info("Document store closed")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""

    app = FastAPI(
        title=API_TITLE,
        version=__version__,
        openapi_tags=TAGS_METADATA,
        lifespan=lifespan,
    )

    # Correlation ID middleware (request_id in every log)
    app.add_middleware(CorrelationMiddleware)

    # Structured error handler for KeyLedgerError
    app.add_exception_handler(KeyLedgerError, keyledger_error_handler)

    # Catch-all handler so unhandled exceptions return JSON (not bare text)
    @app.exception_handler(Exception)
    async def _unhandled_exception_handler(request: Request, exc: Exception):
        logger.error("Unhandled exception on %s %s: %s", request.method, request.url.path, exc, exc_info=True)
        return JSONResponse(
            status_code=500,
            content={"detail": "Internal Server Error"},
        )

    app.include_router(health.router, prefix="/api", tags=["health"])
    app.include_router(interactions.router, prefix="/api", tags=["interactions"])
    app.include_router(admin.router, prefix="/api/admin", tags=["admin"])

    return app


app = create_app()
