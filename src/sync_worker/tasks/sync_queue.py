"""Periodic Stripe sync queue tasks."""

import asyncio
from typing import Any

import structlog
from celery import shared_task

from catalog_sync.config import get_settings
from catalog_sync.infrastructure.database.connection import dispose_engine, get_db_session
from catalog_sync.infrastructure.redis import close_redis, get_cache
from catalog_sync.services.queue_processor import QueueProcessor
from catalog_sync.services.stripe_client import get_provider
from catalog_sync.services.sync_queue import SyncQueueService

logger = structlog.get_logger()


async def _with_resources(action) -> dict[str, Any]:
    # Each task owns its event loop, so pooled connections must not outlive it
    try:
        async with get_db_session() as session:
            return await action(session)
    finally:
        await close_redis()
        await dispose_engine()


@shared_task(bind=True, max_retries=0)
def process_stripe_sync_queue(self, batch_size: int | None = None) -> dict:
    """
    Process one batch of due Stripe sync jobs.

    Failures of individual jobs are recorded on the queue rows; the task
    itself only fails when the database is unreachable.
    """

    async def action(session):
        cache = await get_cache()
        processor = QueueProcessor(session, get_provider(), cache, get_settings())
        return await processor.process_queue(batch_size)

    result = asyncio.run(_with_resources(action))
    logger.info(
        "Stripe sync queue task finished",
        processed=result["processed"],
        successful=result["successful"],
        failed=result["failed"],
    )
    return {key: value for key, value in result.items() if key != "results"}


@shared_task(bind=True, max_retries=3, default_retry_delay=300)
def queue_unsynced_products(self) -> dict:
    """Queue every product that is not linked to Stripe or not synced."""

    async def action(session):
        return await SyncQueueService(session).enqueue_all_products()

    try:
        return asyncio.run(_with_resources(action))
    except Exception as exc:
        logger.error("Queueing unsynced products failed", error=str(exc))
        raise self.retry(exc=exc)


@shared_task(bind=True, max_retries=3, default_retry_delay=600)
def cleanup_stripe_sync_queue(self, retention_days: int | None = None) -> dict:
    """Drop old completed jobs and release jobs stuck in processing."""

    async def action(session):
        return await SyncQueueService(session).cleanup(retention_days)

    try:
        return asyncio.run(_with_resources(action))
    except Exception as exc:
        logger.error("Stripe sync queue cleanup failed", error=str(exc))
        raise self.retry(exc=exc)
