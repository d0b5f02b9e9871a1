"""
School Sync API Server

Entry point for the FastAPI application: catch-up endpoints, the real-time
WebSocket, health and metrics.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Optional

import structlog
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse

from schoolsync import __version__
from schoolsync.api.v1 import router as api_v1_router
from schoolsync.api.v1 import ws_router
from schoolsync.core.config import Settings, get_settings
from schoolsync.core.database import async_session_factory, init_db, ping_db
from schoolsync.core.errors import StorageError
from schoolsync.core.logging import configure_logging
from schoolsync.core.middleware import RequestContextMiddleware, SecurityHeadersMiddleware
from schoolsync.core.redis import close_redis
from schoolsync.sync.service import SyncService

log = structlog.get_logger()


def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(StorageError)
    async def handle_storage_error(request: Request, exc: StorageError):
        log.error(
            "storage_error",
            path=request.url.path,
            method=request.method,
            message=exc.message,
            detail=exc.detail,
        )
        return JSONResponse(status_code=503, content={"detail": "Sync storage unavailable"})


def create_app(
    settings: Optional[Settings] = None,
    sync_service: Optional[SyncService] = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    ``sync_service`` lets tests inject a service bound to their own database.
    """
    settings = settings or get_settings()
    configure_logging(settings.log_level, settings.log_format)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        service = sync_service or SyncService(async_session_factory, settings)
        app.state.sync = service
        log.info("schoolsync.starting", version=__version__)
        if settings.create_tables:
            await init_db(service.session_factory.kw["bind"])
        await service.start()
        try:
            yield
        finally:
            log.info("schoolsync.shutting_down")
            await service.stop()
            await close_redis()

    app = FastAPI(
        title="School Sync",
        description="Change tracking and real-time notifications for the school management API.",
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )

    # Middleware (order matters, outermost first)
    app.add_middleware(SecurityHeadersMiddleware)
    app.add_middleware(RequestContextMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST"],
        allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
    )

    register_exception_handlers(app)

    app.include_router(api_v1_router, prefix="/api/v1")
    app.include_router(ws_router, tags=["Realtime"])

    @app.get("/health", tags=["System"])
    async def health_check():
        """Health check endpoint for liveness probes."""
        return {"status": "ok"}

    @app.get("/ready", tags=["System"])
    async def readiness_check(request: Request):
        """Readiness check: the sync tables' database must answer."""
        service: SyncService = request.app.state.sync
        try:
            await ping_db(service.session_factory)
        except Exception as exc:
            log.warning("ready.database_unavailable", error=str(exc))
            return JSONResponse(status_code=503, content={"status": "unavailable"})
        return {"status": "ready"}

    @app.get("/metrics", tags=["System"], response_class=PlainTextResponse)
    async def metrics(request: Request):
        """Prometheus text exposition."""
        service: SyncService = request.app.state.sync
        return PlainTextResponse(
            service.metrics.to_prometheus(),
            media_type="text/plain; version=0.0.4",
        )

    return app


app = create_app()
