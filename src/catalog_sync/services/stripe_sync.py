"""Create, update and delete catalog products in Stripe.

Stripe prices are immutable: a changed amount produces a new price and the
old one is deactivated. Products are never deleted, only deactivated. A
"not found" answer from Stripe means the object was removed on the Stripe
side, and the sync recreates it instead of failing.
"""

import hashlib
from dataclasses import dataclass
from typing import Any

import orjson
import structlog

from catalog_sync.exceptions import (
    InvalidProductDataError,
    ProductNotFoundError,
    ProviderNotFoundError,
)
from catalog_sync.infrastructure.database.models import (
    OperationType,
    Product,
    SyncQueueItem,
)
from catalog_sync.services.pricing import (
    sanitize_description,
    sanitize_product_name,
    to_minor_units,
)
from catalog_sync.services.stripe_client import ProviderPrice, StripeProvider
from shared.constants import MAX_PRODUCT_IMAGES

logger = structlog.get_logger()


@dataclass
class SyncResult:
    """Outcome of a successful sync operation."""

    stripe_product_id: str | None = None
    stripe_price_id: str | None = None
    provider_called: bool = True


def _idempotency_key(prefix: str | None, kind: str, payload: dict[str, Any]) -> str | None:
    # Same job + same request body -> same key, so a retried job reuses the
    # object an earlier attempt created. Different body -> new key.
    if not prefix:
        return None
    digest = hashlib.sha256(orjson.dumps(payload, option=orjson.OPT_SORT_KEYS)).hexdigest()
    return f"{prefix}-{kind}-{digest[:16]}"


class StripeSyncService:
    """Service reconciling one catalog product with its Stripe counterpart."""

    def __init__(self, provider: StripeProvider):
        self.provider = provider

    async def run(self, item: SyncQueueItem, product: Product | None) -> SyncResult:
        """Dispatch a queue item to the matching operation."""
        operation = item.operation_type
        if operation == OperationType.DELETE:
            return await self.delete(item.job_metadata or {})

        if product is None:
            raise ProductNotFoundError(item.product_id)

        prefix = f"catalog-sync-{item.id}"
        if operation == OperationType.CREATE and not product.stripe_product_id:
            return await self.create(product, idempotency_prefix=prefix)
        if operation in (OperationType.CREATE, OperationType.UPDATE):
            # A create job for an already linked product must not duplicate it
            return await self.update(product, idempotency_prefix=prefix)

        raise InvalidProductDataError(f"Unknown operation type: {operation}")

    # -------------------------------------------------------------------------
    # Operations
    # -------------------------------------------------------------------------

    async def create(
        self, product: Product, *, idempotency_prefix: str | None = None
    ) -> SyncResult:
        """Create a Stripe product and its price."""
        name = sanitize_product_name(product.title)
        amount = to_minor_units(product.price)
        logger.info(
            "Creating Stripe product",
            product_id=str(product.id),
            name=name,
            unit_amount=amount,
        )

        payload = self._product_payload(product, name)
        stripe_product = await self.provider.create_product(
            **payload,
            idempotency_key=_idempotency_key(idempotency_prefix, "product", payload),
        )
        price = await self._create_price(product, stripe_product.id, amount, idempotency_prefix)

        logger.info(
            "Created Stripe product",
            product_id=str(product.id),
            stripe_product_id=stripe_product.id,
            stripe_price_id=price.id,
        )
        return SyncResult(stripe_product_id=stripe_product.id, stripe_price_id=price.id)

    async def update(
        self, product: Product, *, idempotency_prefix: str | None = None
    ) -> SyncResult:
        """Update a linked Stripe product, recreating it if Stripe lost it."""
        if not product.stripe_product_id:
            return await self.create(product, idempotency_prefix=idempotency_prefix)

        name = sanitize_product_name(product.title)
        amount = to_minor_units(product.price)
        payload = self._product_payload(product, name)

        recreated = False
        try:
            stripe_product = await self.provider.update_product(
                product.stripe_product_id, **payload
            )
        except ProviderNotFoundError:
            logger.warning(
                "Stripe product missing, recreating",
                product_id=str(product.id),
                stripe_product_id=product.stripe_product_id,
            )
            stripe_product = await self.provider.create_product(
                **payload,
                idempotency_key=_idempotency_key(idempotency_prefix, "product", payload),
            )
            recreated = True

        price_id = await self._reconcile_price(
            product, stripe_product.id, amount, recreated, idempotency_prefix
        )
        logger.info(
            "Updated Stripe product",
            product_id=str(product.id),
            stripe_product_id=stripe_product.id,
            stripe_price_id=price_id,
            recreated=recreated,
        )
        return SyncResult(stripe_product_id=stripe_product.id, stripe_price_id=price_id)

    async def delete(self, metadata: dict[str, Any]) -> SyncResult:
        """Deactivate the Stripe product named in the job metadata."""
        stripe_product_id = metadata.get("stripe_product_id")
        if not stripe_product_id:
            logger.info("No Stripe product id to deactivate, skipping")
            return SyncResult(provider_called=False)

        try:
            await self.provider.deactivate_product(stripe_product_id)
        except ProviderNotFoundError:
            logger.info("Stripe product already gone", stripe_product_id=stripe_product_id)
        else:
            logger.info("Deactivated Stripe product", stripe_product_id=stripe_product_id)
        return SyncResult(stripe_product_id=stripe_product_id)

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    async def _reconcile_price(
        self,
        product: Product,
        stripe_product_id: str,
        amount: int,
        recreated: bool,
        idempotency_prefix: str | None,
    ) -> str:
        current_id = product.stripe_price_id
        if current_id and recreated:
            # The old price stays attached to the lost product.
            logger.warning(
                "Stripe price orphaned by product recreation",
                product_id=str(product.id),
                stripe_price_id=current_id,
            )
            current_id = None

        if current_id:
            current: ProviderPrice | None
            try:
                current = await self.provider.retrieve_price(current_id)
            except ProviderNotFoundError:
                logger.warning(
                    "Stripe price missing, creating a new one",
                    product_id=str(product.id),
                    stripe_price_id=current_id,
                )
                current = None

            if current is not None:
                if (
                    current.active
                    and current.unit_amount == amount
                    and current.product == stripe_product_id
                ):
                    logger.debug("Price unchanged", stripe_price_id=current.id)
                    return current.id
                if current.active:
                    await self.provider.deactivate_price(current.id)
                    logger.info(
                        "Deactivated stale Stripe price",
                        stripe_price_id=current.id,
                        old_unit_amount=current.unit_amount,
                        new_unit_amount=amount,
                    )

        price = await self._create_price(product, stripe_product_id, amount, idempotency_prefix)
        return price.id

    async def _create_price(
        self,
        product: Product,
        stripe_product_id: str,
        amount: int,
        idempotency_prefix: str | None,
    ) -> ProviderPrice:
        params = {
            "product_id": stripe_product_id,
            "unit_amount": amount,
            "metadata": {"cms_product_id": str(product.id)},
        }
        return await self.provider.create_price(
            **params,
            idempotency_key=_idempotency_key(idempotency_prefix, "price", params),
        )

    @staticmethod
    def _product_payload(product: Product, name: str) -> dict[str, Any]:
        return {
            "name": name,
            "description": sanitize_description(product.description),
            "images": product.image_urls[:MAX_PRODUCT_IMAGES],
            "metadata": {
                "cms_product_id": str(product.id),
                "category": product.category or "",
                "subcategory": product.subcategory or "",
                "available": str(bool(product.available)).lower(),
            },
            "active": bool(product.available),
        }
