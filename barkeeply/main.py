"""
App factory and module-level ASGI app.

Uses an application factory (create_app) so tests can build an app with
their own settings and services.

For local development:
    uvicorn barkeeply.main:app --reload

For production:
    gunicorn barkeeply.main:app -w 1 -k uvicorn.workers.UvicornWorker

One worker per process: the URL cache and analytics queue are
process-local, and each worker would otherwise share one queue file.
"""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from . import __version__
from .api.dependencies import build_services
from .api.routes import analytics, health, media
from .config.settings import Settings, get_settings

logger = logging.getLogger(__name__)


def configure_logging(settings: Settings) -> None:
    logging.basicConfig(
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Startup builds the services (unless a test already attached some) and
    re-arms the flush timer for events restored from disk.

    Shutdown is the process-teardown hook: wait for an in-flight batch,
    record session_end for every open session and persist the queue.
    Nothing is sent over the network at this point; the next process
    delivers what's left.
    """
    settings: Settings = app.state.settings

    logger.info(
        "Barkeeply API starting",
        extra={
            "version": __version__,
            "mock_mode": {
                "storage": settings.storage_mock_mode,
                "snowflake": settings.snowflake_mock_mode,
            }
        }
    )

    missing_fields = settings.validate_required_fields()
    if missing_fields:
        logger.error(
            "Missing required configuration",
            extra={"missing_fields": missing_fields}
        )

    if getattr(app.state, "services", None) is None:
        app.state.services = build_services(settings)

    services = app.state.services
    services.analytics_queue.resume()

    yield

    await services.analytics_queue.wait_idle()
    services.analytics_sessions.end_all()
    logger.info("Barkeeply API shutting down")


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    """
    Application factory.

    Services are not built here so that importing the module never needs
    credentials; the lifespan builds them on startup.
    """
    settings = settings or get_settings()
    configure_logging(settings)

    app = FastAPI(
        title=settings.api_title,
        version=__version__,
        description="""
        Media URL resolution and telemetry ingestion for the drink journal.

        ## Authentication

        All `/api/v1` endpoints require an API key in the `X-API-Key` header.
        Endpoints that act on behalf of a user read `X-User-Id`.

        ## Media

        - `POST /api/v1/media/resolve`: one reference to a loadable URL
        - `POST /api/v1/media/resolve-batch`: many references at once
        - `POST /api/v1/media/upload`: store an image, get its reference
        - `DELETE /api/v1/media/cache`: drop cached URLs on sign-out

        ## Analytics

        - `POST /api/v1/analytics/events`: queue an event
        - `POST /api/v1/analytics/page-views`: queue a page view
        - `POST /api/v1/analytics/flush`: send queued events now
        """,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )
    app.state.settings = settings

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(
        health.router,
        prefix="/health",
        tags=["Health"],
    )

    app.include_router(
        media.router,
        prefix="/api/v1/media",
        tags=["Media"],
    )

    app.include_router(
        analytics.router,
        prefix="/api/v1/analytics",
        tags=["Analytics"],
    )

    @app.get("/", include_in_schema=False)
    async def root():
        return {
            "message": "Barkeeply API",
            "version": __version__,
            "docs": "/docs",
            "health": "/health",
        }

    @app.exception_handler(Exception)
    async def global_exception_handler(request, exc):
        """
        Log anything a route didn't handle and answer with a generic 500;
        error details stay in the server log.
        """
        logger.error(
            "Unhandled exception",
            extra={
                "path": request.url.path,
                "method": request.method,
                "error": str(exc),
            },
            exc_info=exc,
        )

        return JSONResponse(
            status_code=500,
            content={
                "detail": "Internal server error. Please contact support if this persists."
            }
        )

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    settings = get_settings()

    uvicorn.run(
        "barkeeply.main:app",
        host="0.0.0.0",
        port=8000,
        reload=True,
        log_level=settings.log_level.lower(),
    )
