"""SQLAlchemy models for the catalog and the Stripe sync queue.

The products table belongs to the storefront; this service only writes its
sync columns. The queue table is owned by this service.
"""

import uuid
from datetime import datetime, timezone
from enum import Enum as PyEnum
from typing import Any, Optional

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Index,
    Integer,
    String,
    Text,
    Uuid,
    func,
    text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from shared import constants


def utcnow() -> datetime:
    """Naive UTC timestamp, the form stored in the database."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Base(DeclarativeBase):
    """Base class for all models."""


# =============================================================================
# Enums
# =============================================================================


class OperationType(str, PyEnum):
    """Provider operation requested by a queue item."""

    CREATE = constants.OPERATION_CREATE
    UPDATE = constants.OPERATION_UPDATE
    DELETE = constants.OPERATION_DELETE


class QueueStatus(str, PyEnum):
    """Lifecycle of a queue item."""

    PENDING = constants.STATUS_PENDING
    PROCESSING = constants.STATUS_PROCESSING
    COMPLETED = constants.STATUS_COMPLETED
    RETRYING = constants.STATUS_RETRYING
    FAILED = constants.STATUS_FAILED


class ProductSyncStatus(str, PyEnum):
    """Provider sync state shown on the admin dashboard."""

    UNSYNCED = constants.SYNC_UNSYNCED
    PENDING = constants.SYNC_PENDING
    SYNCED = constants.SYNC_SYNCED
    FAILED = constants.SYNC_FAILED


# =============================================================================
# Products
# =============================================================================


class Product(Base):
    """Catalog product as stored by the storefront.

    ``price`` is the display string shown in the shop (``"349€"``); it is
    parsed to minor units only when talking to the provider.
    """

    __tablename__ = "products"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    title: Mapped[str] = mapped_column(String(500), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text)
    price: Mapped[str] = mapped_column(String(50), nullable=False)
    image: Mapped[Optional[str]] = mapped_column(Text)
    images: Mapped[Optional[list]] = mapped_column(JSON, default=list)
    category: Mapped[Optional[str]] = mapped_column(String(255))
    subcategory: Mapped[Optional[str]] = mapped_column(String(255))
    available: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    # Provider references, written only by the queue processor
    stripe_product_id: Mapped[Optional[str]] = mapped_column(String(255), index=True)
    stripe_price_id: Mapped[Optional[str]] = mapped_column(String(255))
    sync_status: Mapped[str] = mapped_column(
        String(20), default=ProductSyncStatus.UNSYNCED.value, nullable=False
    )
    last_synced_at: Mapped[Optional[datetime]] = mapped_column(DateTime)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, server_default=func.now(), onupdate=utcnow, nullable=False
    )

    @property
    def image_urls(self) -> list[str]:
        """Primary image first, then the gallery, without duplicates."""
        urls: list[str] = []
        for url in [self.image, *(self.images or [])]:
            if url and url not in urls:
                urls.append(url)
        return urls

    def __repr__(self) -> str:
        return f"<Product {self.title} ({self.sync_status})>"


# =============================================================================
# Stripe Sync Queue
# =============================================================================


class SyncQueueItem(Base):
    """One catalog-to-provider reconciliation job.

    ``product_id`` is a weak reference: delete jobs outlive their product, so
    they carry the provider product id in ``job_metadata``.
    """

    __tablename__ = "stripe_sync_queue"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    product_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    operation_type: Mapped[str] = mapped_column(String(20), nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), default=QueueStatus.PENDING.value, nullable=False
    )
    retry_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    error_message: Mapped[Optional[str]] = mapped_column(Text)
    job_metadata: Mapped[dict[str, Any]] = mapped_column("metadata", JSON, default=dict)

    # Result of a completed job
    stripe_product_id: Mapped[Optional[str]] = mapped_column(String(255))
    stripe_price_id: Mapped[Optional[str]] = mapped_column(String(255))

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, server_default=func.now(), nullable=False
    )
    claimed_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    processed_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    next_attempt_at: Mapped[Optional[datetime]] = mapped_column(DateTime)

    __table_args__ = (
        Index("ix_stripe_sync_queue_status_created", "status", "created_at"),
        Index(
            "uq_stripe_sync_queue_pending_product",
            "product_id",
            unique=True,
            postgresql_where=text("status = 'pending'"),
            sqlite_where=text("status = 'pending'"),
        ),
    )

    def __repr__(self) -> str:
        return f"<SyncQueueItem {self.operation_type} {self.product_id} ({self.status})>"
