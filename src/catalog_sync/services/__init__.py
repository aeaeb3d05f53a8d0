"""Business logic services."""

from catalog_sync.services.queue_processor import QueueProcessor
from catalog_sync.services.stripe_client import StripeProvider, get_provider
from catalog_sync.services.stripe_sync import StripeSyncService, SyncResult
from catalog_sync.services.sync_queue import SyncQueueService

__all__ = [
    "QueueProcessor",
    "StripeProvider",
    "StripeSyncService",
    "SyncQueueService",
    "SyncResult",
    "get_provider",
]
