"""Exception hierarchy for catalog synchronization."""

from typing import Any


class CatalogSyncError(Exception):
    """Base class for all synchronization errors."""


class InvalidProductDataError(CatalogSyncError):
    """Product data cannot be sent to the provider (bad price, empty name)."""


class ProductNotFoundError(CatalogSyncError):
    """The catalog row referenced by a queue item no longer exists."""

    def __init__(self, product_id: Any):
        self.product_id = product_id
        super().__init__(f"Product not found: {product_id}")


class ProviderError(CatalogSyncError):
    """A provider API call failed. Treated as transient and retried."""

    def __init__(
        self,
        message: str,
        code: str | None = None,
        http_status: int | None = None,
    ):
        self.code = code
        self.http_status = http_status
        super().__init__(message)


class ProviderNotFoundError(ProviderError):
    """The provider reported that a referenced object does not exist."""
