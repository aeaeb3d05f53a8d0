"""FastAPI application entry point."""

from contextlib import asynccontextmanager
from typing import AsyncGenerator

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from catalog_sync import __version__
from catalog_sync.api.v1.router import api_router
from catalog_sync.config import get_settings
from catalog_sync.infrastructure.database.connection import dispose_engine
from catalog_sync.infrastructure.redis import close_redis
from catalog_sync.logging_config import configure_logging
from catalog_sync.middleware.request_logging import RequestLoggingMiddleware

configure_logging()

logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan manager for startup and shutdown events."""
    settings = get_settings()
    logger.info(
        "Starting catalog sync service",
        app_env=settings.app_env,
        debug=settings.debug,
        stripe_configured=bool(settings.stripe_secret_key),
    )

    yield

    await close_redis()
    await dispose_engine()
    logger.info("Shutting down catalog sync service")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()

    app = FastAPI(
        title="Catalog Sync API",
        description="Keeps the shop catalog and its Stripe products and prices in sync",
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )

    app.add_middleware(RequestLoggingMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(api_router, prefix="/api/v1")

    return app


app = create_app()


def run() -> None:
    """Run the application using uvicorn."""
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "catalog_sync.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.debug,
        workers=1 if settings.debug else settings.api_workers,
    )


if __name__ == "__main__":
    run()
