"""Shared constants across the application."""

# Queue item statuses
STATUS_PENDING = "pending"
STATUS_PROCESSING = "processing"
STATUS_COMPLETED = "completed"
STATUS_RETRYING = "retrying"
STATUS_FAILED = "failed"

CLAIMABLE_STATUSES = (STATUS_PENDING, STATUS_RETRYING)
OPEN_STATUSES = (STATUS_PENDING, STATUS_RETRYING)

# Queue operations
OPERATION_CREATE = "create"
OPERATION_UPDATE = "update"
OPERATION_DELETE = "delete"

# Product sync statuses
SYNC_UNSYNCED = "unsynced"
SYNC_PENDING = "pending"
SYNC_SYNCED = "synced"
SYNC_FAILED = "failed"

# API actions
QUEUE_ACTIONS = (
    "process_queue",
    "queue_all_products",
    "get_queue_stats",
    "cleanup_queue",
    "enqueue_product",
    "sync_product",
    "requeue_failed",
)

# Limits
RECENT_ITEMS_LIMIT = 20

# Stripe catalog limits
MAX_PRODUCT_IMAGES = 8
MAX_PRODUCT_NAME_LENGTH = 250
MAX_PRODUCT_DESCRIPTION_LENGTH = 5000
MIN_PRICE_MINOR_UNITS = 50
MAX_PRICE_MINOR_UNITS = 100_000_000

# Redis keys
PROCESSOR_LOCK_KEY = "stripe_sync:processor_lock"
QUEUE_STATS_CACHE_KEY = "stripe_sync:queue_stats"
