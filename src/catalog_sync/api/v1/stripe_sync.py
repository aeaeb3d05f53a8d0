"""Stripe sync queue action endpoint."""

import secrets
import uuid
from typing import Any, Awaitable, Callable

import structlog
from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from catalog_sync.config import Settings, get_settings
from catalog_sync.exceptions import ProductNotFoundError
from catalog_sync.infrastructure.database.connection import get_session
from catalog_sync.infrastructure.database.models import OperationType, Product
from catalog_sync.infrastructure.redis import CacheService, get_cache
from catalog_sync.services.queue_processor import QueueProcessor
from catalog_sync.services.stripe_client import StripeProvider, get_provider
from shared.constants import QUEUE_ACTIONS, QUEUE_STATS_CACHE_KEY

logger = structlog.get_logger()

router = APIRouter()


# =============================================================================
# Models
# =============================================================================


class StripeSyncRequest(BaseModel):
    """Request body for a queue action."""

    action: str = Field(..., description=f"One of: {', '.join(QUEUE_ACTIONS)}")
    batch_size: int | None = Field(
        None, ge=1, le=100, description="Jobs to claim for process_queue"
    )
    product_id: uuid.UUID | None = Field(
        None, description="Product for enqueue_product, sync_product and requeue_failed"
    )
    operation_type: OperationType | None = Field(
        None, description="Operation for enqueue_product"
    )
    dry_run: bool = Field(
        False, description="queue_all_products: report what would be queued, write nothing"
    )
    force_resync: bool = Field(
        False, description="queue_all_products: include products already synced"
    )


# =============================================================================
# Dependencies
# =============================================================================


async def verify_api_key(request: Request, settings: Settings = Depends(get_settings)) -> None:
    """Require the configured service key when one is set."""
    if not settings.sync_api_key:
        return
    provided = request.headers.get(settings.api_key_header, "")
    if not secrets.compare_digest(provided.encode(), settings.sync_api_key.encode()):
        logger.warning("Rejected stripe sync request", reason="invalid_api_key")
        raise HTTPException(status_code=401, detail="Invalid or missing API key")


# =============================================================================
# Actions
# =============================================================================


def _require_product_id(body: StripeSyncRequest) -> uuid.UUID:
    if body.product_id is None:
        raise HTTPException(
            status_code=400, detail=f"product_id is required for {body.action}"
        )
    return body.product_id


async def _process_queue(
    body: StripeSyncRequest, processor: QueueProcessor, cache: CacheService, settings: Settings
) -> dict[str, Any]:
    return await processor.process_queue(body.batch_size)


async def _queue_all_products(
    body: StripeSyncRequest, processor: QueueProcessor, cache: CacheService, settings: Settings
) -> dict[str, Any]:
    counts = await processor.queue.enqueue_all_products(
        dry_run=body.dry_run, force_resync=body.force_resync
    )
    if body.dry_run:
        message = (
            f"Dry run: would queue {counts['queued']} products, "
            f"{len(counts['invalid'])} invalid"
        )
    else:
        await cache.delete(QUEUE_STATS_CACHE_KEY)
        message = f"Queued {counts['queued']} products for sync"
    return {"success": True, **counts, "message": message}


async def _get_queue_stats(
    body: StripeSyncRequest, processor: QueueProcessor, cache: CacheService, settings: Settings
) -> dict[str, Any]:
    cached = await cache.get(QUEUE_STATS_CACHE_KEY)
    if cached is not None:
        return {"success": True, **cached, "cached": True}

    stats = await processor.queue.queue_stats()
    await cache.set(QUEUE_STATS_CACHE_KEY, stats, ttl_seconds=settings.sync_stats_cache_ttl_seconds)
    return {"success": True, **stats, "cached": False}


async def _cleanup_queue(
    body: StripeSyncRequest, processor: QueueProcessor, cache: CacheService, settings: Settings
) -> dict[str, Any]:
    summary = await processor.queue.cleanup()
    await cache.delete(QUEUE_STATS_CACHE_KEY)
    return {
        "success": True,
        **summary,
        "message": (
            f"Deleted {summary['deleted']} old completed items, "
            f"released {summary['released']} stale items"
        ),
    }


async def _enqueue_product(
    body: StripeSyncRequest, processor: QueueProcessor, cache: CacheService, settings: Settings
) -> dict[str, Any]:
    product_id = _require_product_id(body)
    if body.operation_type is None:
        raise HTTPException(status_code=400, detail="operation_type is required for enqueue_product")

    product = await processor.session.get(Product, product_id)
    if product is None:
        raise ProductNotFoundError(product_id)

    if body.operation_type == OperationType.DELETE:
        item = await processor.queue.enqueue_product_deletion(product)
    else:
        item = await processor.queue.enqueue(product_id, body.operation_type)
    await cache.delete(QUEUE_STATS_CACHE_KEY)

    return {
        "success": True,
        "queue_item_id": str(item.id),
        "product_id": str(product_id),
        "operation_type": item.operation_type,
        "status": item.status,
        "message": f"Queued {item.operation_type} for product {product_id}",
    }


async def _sync_product(
    body: StripeSyncRequest, processor: QueueProcessor, cache: CacheService, settings: Settings
) -> dict[str, Any]:
    return await processor.sync_product(_require_product_id(body))


async def _requeue_failed(
    body: StripeSyncRequest, processor: QueueProcessor, cache: CacheService, settings: Settings
) -> dict[str, Any]:
    requeued = await processor.queue.requeue_failed(body.product_id)
    await cache.delete(QUEUE_STATS_CACHE_KEY)
    return {
        "success": True,
        "requeued": requeued,
        "message": f"Requeued {requeued} failed items",
    }


ActionHandler = Callable[
    [StripeSyncRequest, QueueProcessor, CacheService, Settings], Awaitable[dict[str, Any]]
]

_ACTIONS: dict[str, ActionHandler] = {
    "process_queue": _process_queue,
    "queue_all_products": _queue_all_products,
    "get_queue_stats": _get_queue_stats,
    "cleanup_queue": _cleanup_queue,
    "enqueue_product": _enqueue_product,
    "sync_product": _sync_product,
    "requeue_failed": _requeue_failed,
}


# =============================================================================
# Endpoint
# =============================================================================


@router.post("", dependencies=[Depends(verify_api_key)], response_model=None)
async def run_sync_action(
    body: StripeSyncRequest,
    session: AsyncSession = Depends(get_session),
    provider: StripeProvider = Depends(get_provider),
    cache: CacheService = Depends(get_cache),
    settings: Settings = Depends(get_settings),
) -> dict[str, Any] | JSONResponse:
    """
    Run one Stripe sync queue action.

    **Actions:**
    - `process_queue`: claim and sync up to `batch_size` due jobs
    - `queue_all_products`: queue every product not fully synced
      (`force_resync` includes synced ones, `dry_run` only reports)
    - `get_queue_stats`: counts per status and operation plus recent jobs
    - `cleanup_queue`: drop old completed jobs, release stuck ones
    - `enqueue_product`: queue `operation_type` for `product_id`
    - `sync_product`: queue and immediately sync `product_id`
    - `requeue_failed`: reset failed jobs (optionally only for `product_id`)

    When a service key is configured it must be sent in the `X-API-Key`
    header.
    """
    handler = _ACTIONS.get(body.action)
    if handler is None:
        raise HTTPException(
            status_code=400,
            detail=f"Unknown action: {body.action}. Available actions: {', '.join(QUEUE_ACTIONS)}",
        )

    processor = QueueProcessor(session, provider, cache, settings)
    log = logger.bind(action=body.action)
    try:
        result = await handler(body, processor, cache, settings)
    except HTTPException:
        raise
    except ProductNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except Exception as exc:
        await session.rollback()
        log.exception("Stripe sync action failed", error=str(exc))
        return JSONResponse(status_code=500, content={"success": False, "error": str(exc)})

    log.info("Stripe sync action completed", success=result.get("success"))
    return result
