"""Batch processor draining the Stripe sync queue."""

import asyncio
import uuid
from typing import Any

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from catalog_sync.config import Settings, get_settings
from catalog_sync.exceptions import CatalogSyncError, ProductNotFoundError
from catalog_sync.infrastructure.database.models import (
    OperationType,
    Product,
    SyncQueueItem,
)
from catalog_sync.infrastructure.redis import CacheService
from catalog_sync.services.stripe_client import StripeProvider
from catalog_sync.services.stripe_sync import StripeSyncService
from catalog_sync.services.sync_queue import SyncQueueService
from shared.constants import PROCESSOR_LOCK_KEY, QUEUE_STATS_CACHE_KEY

logger = structlog.get_logger()


class QueueProcessor:
    """Claims due jobs and runs them against Stripe one at a time.

    Each job is isolated: an exception from one job is recorded on that job
    and the batch moves on. Jobs are spaced by ``sync_inter_job_delay_ms`` to
    stay under the provider's rate limit.
    """

    def __init__(
        self,
        session: AsyncSession,
        provider: StripeProvider,
        cache: CacheService | None = None,
        settings: Settings | None = None,
    ):
        self.session = session
        self.settings = settings or get_settings()
        self.cache = cache or CacheService(None)
        self.queue = SyncQueueService(session, self.settings)
        self.sync = StripeSyncService(provider)

    def _clamp_batch_size(self, batch_size: int | None) -> int:
        size = batch_size or self.settings.sync_batch_size
        return max(1, min(size, self.settings.sync_max_batch_size))

    async def process_queue(self, batch_size: int | None = None) -> dict[str, Any]:
        """Process one batch of due jobs.

        Returns a summary with per-job results. If another processor holds the
        lock, nothing is claimed and ``processed`` is 0.
        """
        size = self._clamp_batch_size(batch_size)
        token = await self.cache.acquire_lock(
            PROCESSOR_LOCK_KEY, self.settings.sync_lock_ttl_seconds
        )
        if token is None:
            logger.info("Queue processing already in progress, skipping")
            return _summary([], "Queue processing already in progress")

        try:
            return await self._process_batch(size)
        finally:
            await self.cache.release_lock(PROCESSOR_LOCK_KEY, token)
            await self.cache.delete(QUEUE_STATS_CACHE_KEY)

    async def _process_batch(self, batch_size: int) -> dict[str, Any]:
        items = await self.queue.claim_batch(batch_size)
        if not items:
            logger.debug("No items in queue to process")
            return _summary([], "No items in queue to process")

        logger.info("Processing sync queue batch", count=len(items), batch_size=batch_size)
        delay = self.settings.sync_inter_job_delay_ms / 1000

        results = []
        for index, item in enumerate(items):
            if index and delay > 0:
                await asyncio.sleep(delay)
            results.append(await self.process_item(item))

        summary = _summary(results)
        logger.info(
            "Sync queue batch finished",
            processed=summary["processed"],
            successful=summary["successful"],
            failed=summary["failed"],
        )
        return summary

    async def process_item(self, item: SyncQueueItem) -> dict[str, Any]:
        """Run one claimed job and record its outcome."""
        log = logger.bind(
            queue_item_id=str(item.id),
            product_id=str(item.product_id),
            operation_type=item.operation_type,
        )

        try:
            product: Product | None = None
            if item.operation_type != OperationType.DELETE:
                product = await self.queue.load_product(item)
            result = await self.sync.run(item, product)
            await self.queue.complete(item, result)
        except Exception as exc:
            error = str(exc) or exc.__class__.__name__
            # Drop whatever the attempt left in the session before recording it
            await self.session.rollback()
            await self.session.refresh(item)
            status = await self.queue.fail(item, error)
            log.error(
                "Sync job failed",
                error=error,
                retry_count=item.retry_count,
                status=status,
                exc_info=not isinstance(exc, CatalogSyncError),
            )
            return _item_result(item, success=False, error=error)

        log.info(
            "Sync job completed",
            stripe_product_id=result.stripe_product_id,
            stripe_price_id=result.stripe_price_id,
        )
        return _item_result(item, success=True)

    async def sync_product(self, product_id: uuid.UUID) -> dict[str, Any]:
        """Queue and immediately run a sync for one product."""
        product = await self.session.get(Product, product_id)
        if product is None:
            raise ProductNotFoundError(product_id)

        if product.stripe_product_id and product.stripe_price_id:
            operation = OperationType.UPDATE
        else:
            operation = OperationType.CREATE
        item = await self.queue.enqueue(product_id, operation)

        claimed = await self.queue.claim_item(item.id)
        if claimed is None:
            logger.info(
                "Sync job already being processed",
                product_id=str(product_id),
                queue_item_id=str(item.id),
            )
            return {
                "success": False,
                "message": "Sync already in progress for this product",
                "result": None,
            }

        outcome = await self.process_item(claimed)
        await self.cache.delete(QUEUE_STATS_CACHE_KEY)
        return {
            "success": outcome["success"],
            "message": "Product synced" if outcome["success"] else "Product sync failed",
            "result": outcome,
        }


def _item_result(
    item: SyncQueueItem, *, success: bool, error: str | None = None
) -> dict[str, Any]:
    return {
        "queue_item_id": str(item.id),
        "product_id": str(item.product_id),
        "operation_type": item.operation_type,
        "status": item.status,
        "success": success,
        "error": error,
        "stripe_product_id": item.stripe_product_id if success else None,
        "stripe_price_id": item.stripe_price_id if success else None,
    }


def _summary(results: list[dict[str, Any]], message: str | None = None) -> dict[str, Any]:
    successful = sum(1 for r in results if r["success"])
    failed = len(results) - successful
    if message is None:
        message = f"Processed {len(results)} items: {successful} successful, {failed} failed"
    return {
        "success": True,
        "processed": len(results),
        "successful": successful,
        "failed": failed,
        "results": results,
        "message": message,
    }

