"""Stripe sync queue persistence.

Job lifecycle: ``pending|retrying -> processing -> completed|retrying|failed``.
Claims are a single conditional UPDATE so overlapping processors never pick
up the same row. Job and product writes for one outcome share a transaction.
"""

import random
import uuid
from datetime import datetime, timedelta
from typing import Any, Sequence

import structlog
from sqlalchemy import Select, delete, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from catalog_sync.config import Settings, get_settings
from catalog_sync.exceptions import InvalidProductDataError
from catalog_sync.infrastructure.database.models import (
    OperationType,
    Product,
    ProductSyncStatus,
    QueueStatus,
    SyncQueueItem,
    utcnow,
)
from catalog_sync.services.pricing import sanitize_product_name, to_minor_units
from catalog_sync.services.stripe_sync import SyncResult
from shared.constants import CLAIMABLE_STATUSES, OPEN_STATUSES, RECENT_ITEMS_LIMIT

logger = structlog.get_logger()

BACKOFF_JITTER_RATIO = 0.3
MAX_ERROR_LENGTH = 2000


def merge_operations(existing: str, requested: OperationType) -> OperationType:
    """Resolve the operation of an open job that absorbs a new request."""
    if requested == OperationType.DELETE:
        return OperationType.DELETE
    if OperationType.CREATE in (existing, requested):
        return OperationType.CREATE
    return OperationType.UPDATE


def _isoformat(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _validation_error(title: str | None, price: str | None) -> str | None:
    try:
        sanitize_product_name(title)
        to_minor_units(price)
    except InvalidProductDataError as exc:
        return str(exc)
    return None


class SyncQueueService:
    """Service for reading and writing the Stripe sync queue."""

    def __init__(self, session: AsyncSession, settings: Settings | None = None):
        self.session = session
        self.settings = settings or get_settings()

    # -------------------------------------------------------------------------
    # Claiming
    # -------------------------------------------------------------------------

    async def claim_batch(self, batch_size: int) -> list[SyncQueueItem]:
        """Atomically move up to ``batch_size`` due jobs to ``processing``.

        Jobs are returned oldest first.
        """
        now = utcnow()
        candidates = (
            select(SyncQueueItem.id)
            .where(
                SyncQueueItem.status.in_(CLAIMABLE_STATUSES),
                SyncQueueItem.retry_count < self.settings.sync_max_retries,
                or_(
                    SyncQueueItem.next_attempt_at.is_(None),
                    SyncQueueItem.next_attempt_at <= now,
                ),
            )
            .order_by(SyncQueueItem.created_at)
            .limit(batch_size)
            .with_for_update(skip_locked=True)
        )
        return await self._claim(candidates, now)

    async def claim_item(self, item_id: uuid.UUID) -> SyncQueueItem | None:
        """Claim one open job regardless of its backoff window."""
        candidates = (
            select(SyncQueueItem.id)
            .where(
                SyncQueueItem.id == item_id,
                SyncQueueItem.status.in_(CLAIMABLE_STATUSES),
            )
            .with_for_update(skip_locked=True)
        )
        claimed = await self._claim(candidates, utcnow())
        return claimed[0] if claimed else None

    async def _claim(self, candidates: Select, now: datetime) -> list[SyncQueueItem]:
        stmt = (
            update(SyncQueueItem)
            .where(
                SyncQueueItem.id.in_(candidates),
                SyncQueueItem.status.in_(CLAIMABLE_STATUSES),
            )
            .values(status=QueueStatus.PROCESSING.value, claimed_at=now)
            .returning(SyncQueueItem.id)
            .execution_options(synchronize_session=False)
        )
        claimed_ids = list((await self.session.execute(stmt)).scalars())
        await self.session.commit()
        if not claimed_ids:
            return []

        result = await self.session.scalars(
            select(SyncQueueItem)
            .where(SyncQueueItem.id.in_(claimed_ids))
            .order_by(SyncQueueItem.created_at)
            .execution_options(populate_existing=True)
        )
        return list(result)

    async def load_product(self, item: SyncQueueItem) -> Product | None:
        return await self.session.get(Product, item.product_id, populate_existing=True)

    # -------------------------------------------------------------------------
    # Outcomes
    # -------------------------------------------------------------------------

    async def complete(self, item: SyncQueueItem, result: SyncResult) -> None:
        """Record a successful job and link the product to its Stripe ids.

        The product row may have been deleted while the job ran; the job is
        still completed and the product write matches nothing.
        """
        now = utcnow()
        item.status = QueueStatus.COMPLETED.value
        item.error_message = None
        item.processed_at = now
        item.next_attempt_at = None
        item.stripe_product_id = result.stripe_product_id
        item.stripe_price_id = result.stripe_price_id

        if item.operation_type != OperationType.DELETE:
            values: dict[str, Any] = {
                "sync_status": ProductSyncStatus.SYNCED.value,
                "last_synced_at": now,
            }
            if result.stripe_product_id:
                values["stripe_product_id"] = result.stripe_product_id
            if result.stripe_price_id:
                values["stripe_price_id"] = result.stripe_price_id
            if not await self._update_product(item.product_id, **values):
                logger.warning(
                    "Product removed before sync completed",
                    queue_item_id=str(item.id),
                    product_id=str(item.product_id),
                    stripe_product_id=result.stripe_product_id,
                )

        await self.session.commit()

    async def fail(self, item: SyncQueueItem, error: str) -> str:
        """Record a failed attempt and schedule a retry or give up."""
        await self._record_failure(item, error, utcnow())
        await self.session.commit()
        return item.status

    async def _record_failure(self, item: SyncQueueItem, error: str, now: datetime) -> None:
        item.retry_count = (item.retry_count or 0) + 1
        item.error_message = error[:MAX_ERROR_LENGTH]
        item.processed_at = now

        if item.retry_count >= self.settings.sync_max_retries:
            item.status = QueueStatus.FAILED.value
            item.next_attempt_at = None
            if item.operation_type != OperationType.DELETE:
                await self._update_product(
                    item.product_id, sync_status=ProductSyncStatus.FAILED.value
                )
        else:
            item.status = QueueStatus.RETRYING.value
            item.next_attempt_at = now + timedelta(seconds=self.backoff_seconds(item.retry_count))

    async def _update_product(self, product_id: uuid.UUID, **values: Any) -> bool:
        """Write product columns by id; False when the row no longer exists."""
        result = await self.session.execute(
            update(Product)
            .where(Product.id == product_id)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        return bool(result.rowcount)

    def backoff_seconds(self, retry_count: int) -> float:
        """Exponential backoff with jitter for the given attempt number."""
        base = self.settings.sync_retry_base_delay_seconds
        if base <= 0:
            return 0.0
        ceiling = max(base, self.settings.sync_retry_max_delay_seconds)
        raw = min(ceiling, base * (2 ** max(0, retry_count - 1)))
        jitter = random.uniform(0, raw * BACKOFF_JITTER_RATIO)
        return min(ceiling, raw + jitter)

    # -------------------------------------------------------------------------
    # Enqueueing
    # -------------------------------------------------------------------------

    async def enqueue(
        self,
        product_id: uuid.UUID,
        operation: OperationType | str,
        metadata: dict[str, Any] | None = None,
    ) -> SyncQueueItem:
        """Queue a job, merging into the product's open job if there is one."""
        item, _ = await self._enqueue(product_id, OperationType(operation), metadata)
        await self.session.commit()
        return item

    async def enqueue_product_deletion(self, product: Product) -> SyncQueueItem:
        """Queue a delete job that survives the product row."""
        return await self.enqueue(
            product.id,
            OperationType.DELETE,
            {
                "stripe_product_id": product.stripe_product_id,
                "stripe_price_id": product.stripe_price_id,
            },
        )

    async def enqueue_all_products(
        self, *, dry_run: bool = False, force_resync: bool = False
    ) -> dict[str, Any]:
        """Queue every product that is not fully linked to Stripe.

        Args:
            dry_run: Write nothing. Report what would be queued and which
                products would fail validation.
            force_resync: Queue every product, including synced ones.
        """
        stmt = select(
            Product.id,
            Product.title,
            Product.price,
            Product.stripe_product_id,
            Product.stripe_price_id,
        ).order_by(Product.created_at)
        if not force_resync:
            stmt = stmt.where(
                or_(
                    Product.stripe_product_id.is_(None),
                    Product.stripe_price_id.is_(None),
                    Product.sync_status.is_(None),
                    Product.sync_status != ProductSyncStatus.SYNCED.value,
                )
            )
        rows = (await self.session.execute(stmt)).all()

        created = 0
        merged = 0
        invalid: list[dict[str, str]] = []
        for row in rows:
            if not row.stripe_product_id or not row.stripe_price_id:
                operation = OperationType.CREATE
            else:
                operation = OperationType.UPDATE

            if dry_run:
                error = _validation_error(row.title, row.price)
                if error is not None:
                    invalid.append({"product_id": str(row.id), "title": row.title, "error": error})
                    continue
                is_new = await self._find_open_job(row.id) is None
            else:
                _, is_new = await self._enqueue(row.id, operation, None)

            if is_new:
                created += 1
            else:
                merged += 1

        if dry_run:
            logger.info(
                "Dry run of queueing products",
                would_create=created,
                would_merge=merged,
                invalid=len(invalid),
            )
            return {
                "queued": created + merged,
                "created": created,
                "merged": merged,
                "dry_run": True,
                "invalid": invalid,
            }

        await self.session.commit()
        logger.info("Queued products for sync", created=created, merged=merged, force_resync=force_resync)
        return {"queued": created + merged, "created": created, "merged": merged, "dry_run": False}

    async def _enqueue(
        self,
        product_id: uuid.UUID,
        operation: OperationType,
        metadata: dict[str, Any] | None,
    ) -> tuple[SyncQueueItem, bool]:
        existing = await self._find_open_job(product_id)
        if existing is not None:
            existing.operation_type = merge_operations(existing.operation_type, operation).value
            existing.job_metadata = {**(existing.job_metadata or {}), **(metadata or {})}
            existing.next_attempt_at = None
            item, is_new = existing, False
            logger.debug(
                "Merged into open sync job",
                queue_item_id=str(existing.id),
                product_id=str(product_id),
                operation_type=existing.operation_type,
            )
        else:
            item = SyncQueueItem(
                product_id=product_id,
                operation_type=operation.value,
                status=QueueStatus.PENDING.value,
                retry_count=0,
                job_metadata=dict(metadata or {}),
            )
            self.session.add(item)
            is_new = True

        if operation != OperationType.DELETE:
            await self._update_product(product_id, sync_status=ProductSyncStatus.PENDING.value)
        await self.session.flush()
        return item, is_new

    async def _find_open_job(self, product_id: uuid.UUID) -> SyncQueueItem | None:
        return await self.session.scalar(
            select(SyncQueueItem)
            .where(
                SyncQueueItem.product_id == product_id,
                SyncQueueItem.status.in_(OPEN_STATUSES),
            )
            .order_by(SyncQueueItem.created_at)
            .limit(1)
        )

    async def requeue_failed(self, product_id: uuid.UUID | None = None) -> int:
        """Give failed jobs a fresh retry budget."""
        stmt = (
            select(SyncQueueItem)
            .where(SyncQueueItem.status == QueueStatus.FAILED.value)
            .order_by(SyncQueueItem.created_at)
        )
        if product_id is not None:
            stmt = stmt.where(SyncQueueItem.product_id == product_id)
        failed_items: Sequence[SyncQueueItem] = (await self.session.scalars(stmt)).all()

        requeued = 0
        for item in failed_items:
            open_job = await self._find_open_job(item.product_id)
            if open_job is not None:
                # The open job already carries a newer request for this product
                open_job.operation_type = merge_operations(
                    open_job.operation_type, OperationType(item.operation_type)
                ).value
                open_job.job_metadata = {**(item.job_metadata or {}), **(open_job.job_metadata or {})}
                await self.session.delete(item)
            else:
                item.status = QueueStatus.PENDING.value
                item.retry_count = 0
                item.error_message = None
                item.next_attempt_at = None
                if item.operation_type != OperationType.DELETE:
                    await self._update_product(
                        item.product_id, sync_status=ProductSyncStatus.PENDING.value
                    )
            await self.session.flush()
            requeued += 1

        await self.session.commit()
        logger.info("Requeued failed sync jobs", count=requeued)
        return requeued

    # -------------------------------------------------------------------------
    # Maintenance
    # -------------------------------------------------------------------------

    async def cleanup(self, retention_days: int | None = None) -> dict[str, int]:
        """Drop old completed jobs and release jobs stuck in ``processing``."""
        now = utcnow()
        retention = self.settings.sync_queue_retention_days if retention_days is None else retention_days

        result = await self.session.execute(
            delete(SyncQueueItem)
            .where(
                SyncQueueItem.status == QueueStatus.COMPLETED.value,
                SyncQueueItem.processed_at < now - timedelta(days=retention),
            )
            .execution_options(synchronize_session=False)
        )
        deleted = result.rowcount or 0

        stale_cutoff = now - timedelta(minutes=self.settings.sync_stale_processing_minutes)
        stale_items = (
            await self.session.scalars(
                select(SyncQueueItem).where(
                    SyncQueueItem.status == QueueStatus.PROCESSING.value,
                    or_(
                        SyncQueueItem.claimed_at.is_(None),
                        SyncQueueItem.claimed_at < stale_cutoff,
                    ),
                )
            )
        ).all()
        for item in stale_items:
            await self._record_failure(item, "Processing timed out", now)
            logger.warning(
                "Released stale sync job",
                queue_item_id=str(item.id),
                product_id=str(item.product_id),
                status=item.status,
            )

        await self.session.commit()
        summary = {"deleted": deleted, "released": len(stale_items)}
        logger.info("Sync queue cleanup completed", **summary)
        return summary

    async def queue_stats(self) -> dict[str, Any]:
        """Counts per status and operation plus the most recent jobs."""
        by_status = {status.value: 0 for status in QueueStatus}
        status_rows = await self.session.execute(
            select(SyncQueueItem.status, func.count()).group_by(SyncQueueItem.status)
        )
        for status, count in status_rows.all():
            by_status[status] = count

        by_operation = {operation.value: 0 for operation in OperationType}
        operation_rows = await self.session.execute(
            select(SyncQueueItem.operation_type, func.count()).group_by(
                SyncQueueItem.operation_type
            )
        )
        for operation, count in operation_rows.all():
            by_operation[operation] = count

        oldest_open = await self.session.scalar(
            select(func.min(SyncQueueItem.created_at)).where(
                SyncQueueItem.status.in_(OPEN_STATUSES)
            )
        )

        recent_rows = await self.session.execute(
            select(SyncQueueItem, Product.title)
            .outerjoin(Product, Product.id == SyncQueueItem.product_id)
            .order_by(SyncQueueItem.created_at.desc())
            .limit(RECENT_ITEMS_LIMIT)
        )
        recent_items = [
            {
                "id": str(item.id),
                "product_id": str(item.product_id),
                "product_title": title,
                "operation_type": item.operation_type,
                "status": item.status,
                "retry_count": item.retry_count,
                "error_message": item.error_message,
                "created_at": _isoformat(item.created_at),
                "processed_at": _isoformat(item.processed_at),
            }
            for item, title in recent_rows.all()
        ]

        return {
            "stats": {
                "total": sum(by_status.values()),
                "by_status": by_status,
                "by_operation": by_operation,
                "oldest_open_created_at": _isoformat(oldest_open),
            },
            "recent_items": recent_items,
        }
