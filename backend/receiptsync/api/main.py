"""Entry point for the FastAPI application.

This module constructs the FastAPI app, includes all routers under
``API_V1_STR`` and sets up the lifespan hooks.  When run with uvicorn
it initialises the database and loads configuration from
``receiptsync.core.config``.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from urllib.parse import urlparse

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from receiptsync.api.error_handlers import register_exception_handlers
from receiptsync.api.routes.connections import router as connections_router
from receiptsync.api.routes.destinations import router as destinations_router
from receiptsync.api.routes.exports import router as exports_router
from receiptsync.api.routes.extract import router as extract_router
from receiptsync.api.routes.limits import router as limits_router
from receiptsync.api.routes.receipts import router as receipts_router
from receiptsync.api.routes.stripe_webhooks import router as stripe_webhooks_router
from receiptsync.core.config import settings
from receiptsync.core.database import get_db_debug_info, init_db
from receiptsync.core.observability import init_sentry
from receiptsync.services.cache import close_redis

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage application lifecycle."""
    logger.info("Starting up...")
    if init_sentry("api"):
        logger.info("Sentry SDK initialized (api)")
    await init_db()
    yield
    logger.info("Shutting down...")
    await close_redis()


def _cors_origins() -> list[str]:
    """Allow everything in development, else the configured origins plus the frontend."""
    if (settings.ENVIRONMENT or "development").lower() == "development":
        return ["*"]
    origins = list(settings.BACKEND_CORS_ORIGINS or [])
    parsed = urlparse(settings.FRONTEND_BASE_URL or "")
    if parsed.scheme and parsed.netloc:
        front_origin = f"{parsed.scheme}://{parsed.netloc}"
        if front_origin not in origins:
            origins.append(front_origin)
    return origins


def create_app() -> FastAPI:
    app = FastAPI(title=f"{settings.PROJECT_NAME} API", version="1.0.0", lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=_cors_origins(),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    register_exception_handlers(app)

    prefix = settings.API_V1_STR
    app.include_router(receipts_router, prefix=prefix)
    app.include_router(exports_router, prefix=prefix)
    app.include_router(extract_router, prefix=prefix)
    app.include_router(connections_router, prefix=prefix)
    app.include_router(destinations_router, prefix=prefix)
    app.include_router(limits_router, prefix=prefix)
    app.include_router(stripe_webhooks_router, prefix=prefix)

    @app.api_route("/health", methods=["GET", "HEAD"])
    async def health_check():
        """Health check endpoint (supports GET & HEAD)."""
        return {"status": "healthy"}

    @app.get("/debug/db", include_in_schema=False)
    async def db_debug():
        """Return non-sensitive DB diagnostics (for development)."""
        return get_db_debug_info()

    return app


app = create_app()
