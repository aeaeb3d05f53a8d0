"""API v1 router that aggregates all endpoint routers."""

from fastapi import APIRouter

from catalog_sync.api.v1 import health, stripe_sync

api_router = APIRouter()

api_router.include_router(
    health.router,
    tags=["Health"],
)

api_router.include_router(
    stripe_sync.router,
    prefix="/stripe-sync",
    tags=["Stripe Sync"],
)
