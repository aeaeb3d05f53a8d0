"""Health check endpoints."""

from datetime import datetime, timezone
from typing import Any

from fastapi import APIRouter, Depends, Response, status
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from catalog_sync import __version__
from catalog_sync.config import Settings, get_settings
from catalog_sync.infrastructure.database.connection import check_database, get_session
from catalog_sync.infrastructure.redis import CacheService, get_cache

router = APIRouter()


class HealthResponse(BaseModel):
    """Health check response model."""

    status: str
    version: str
    environment: str
    timestamp: str
    dependencies: dict[str, Any]


class ReadinessResponse(BaseModel):
    """Readiness check response model."""

    ready: bool
    checks: dict[str, bool]


@router.get("/health", response_model=HealthResponse)
async def health_check(settings: Settings = Depends(get_settings)) -> HealthResponse:
    """
    Basic health check endpoint.

    Returns the service status and version information. Does not touch
    any dependency.
    """
    return HealthResponse(
        status="healthy",
        version=__version__,
        environment=settings.app_env,
        timestamp=datetime.now(timezone.utc).isoformat(),
        dependencies={
            "postgres": "configured",
            "redis": "configured",
            "stripe": "configured" if settings.stripe_secret_key else "missing",
        },
    )


@router.get("/health/ready", response_model=ReadinessResponse)
async def readiness_check(
    response: Response,
    session: AsyncSession = Depends(get_session),
    cache: CacheService = Depends(get_cache),
) -> ReadinessResponse:
    """
    Readiness check endpoint.

    Pings PostgreSQL and Redis. The service can run without Redis (locking
    and stats caching are skipped), so only the database decides readiness.
    """
    checks = {
        "postgres": await check_database(session),
        "redis": await cache.health_check(),
    }
    ready = checks["postgres"]
    if not ready:
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE

    return ReadinessResponse(ready=ready, checks=checks)


@router.get("/health/live")
async def liveness_check() -> dict[str, str]:
    """Returns 200 while the process is running."""
    return {"status": "alive"}
