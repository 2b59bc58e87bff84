"""
Atom Gym API Server

Entry point for the FastAPI application.
"""

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app.core.config import get_settings
from app.core.database import create_schema, ping
from app.core.errors import register_error_handlers
from app.core.logging import configure_logging
from app.core.middleware import CSRF_HEADER, CSRFMiddleware, SecurityHeadersMiddleware
from app.core.redis import close_redis
from app.api.v1 import router as api_v1_router

settings = get_settings()
log = structlog.get_logger()


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    configure_logging(settings.log_level, settings.log_format)

    app = FastAPI(
        title="Atom Gym",
        description="Membership, subscription lifecycle and check-in service.",
        version="0.1.0",
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
    )

    # Middleware (the last one added runs outermost)
    app.add_middleware(CSRFMiddleware)
    app.add_middleware(SecurityHeadersMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST"],
        allow_headers=["Content-Type", "Authorization", CSRF_HEADER],
    )

    register_error_handlers(app)

    app.include_router(api_v1_router, prefix="/api/v1")

    @app.get("/health", tags=["System"])
    async def health_check():
        """Liveness check: the process is up."""
        return {"status": "ok"}

    @app.get("/ready", tags=["System"])
    async def readiness_check():
        """Readiness check: the store must answer."""
        await ping()
        return {"status": "ready"}

    @app.on_event("startup")
    async def on_startup():
        log.info("atom.starting", timezone=settings.timezone)
        if settings.create_schema_on_startup:
            await create_schema()

    @app.on_event("shutdown")
    async def on_shutdown():
        log.info("atom.shutting_down")
        await close_redis()

    return app


app = create_app()
