"""Thin async client for Stripe catalog objects (products and prices)."""

import asyncio
from dataclasses import dataclass
from functools import lru_cache
from typing import Any, Callable

import stripe
import structlog

from catalog_sync.config import Settings, get_settings
from catalog_sync.exceptions import ProviderError, ProviderNotFoundError

logger = structlog.get_logger()


@dataclass(frozen=True)
class ProviderProduct:
    """The parts of a Stripe product the sync cares about."""

    id: str
    active: bool


@dataclass(frozen=True)
class ProviderPrice:
    """The parts of a Stripe price the sync cares about."""

    id: str
    product: str
    unit_amount: int | None
    active: bool


def _to_product(obj: Any) -> ProviderProduct:
    return ProviderProduct(id=obj.id, active=bool(obj.active))


def _to_price(obj: Any) -> ProviderPrice:
    product = obj.product
    return ProviderPrice(
        id=obj.id,
        product=product if isinstance(product, str) else product.id,
        unit_amount=obj.unit_amount,
        active=bool(obj.active),
    )


class StripeProvider:
    """Calls the Stripe API with the service's secret key.

    The SDK is blocking, so every call runs in a worker thread. Stripe errors
    are translated into ``ProviderError``; a missing object becomes
    ``ProviderNotFoundError`` so callers can recreate it.
    """

    def __init__(self, settings: Settings):
        self.api_key = settings.stripe_secret_key
        self.api_version = settings.stripe_api_version
        self.currency = settings.stripe_currency
        stripe.max_network_retries = settings.stripe_max_network_retries

    async def _call(
        self,
        operation: str,
        func: Callable[..., Any],
        *args: Any,
        idempotency_key: str | None = None,
        **params: Any,
    ) -> Any:
        if not self.api_key:
            raise ProviderError("Stripe not configured", code="not_configured")

        request_options: dict[str, Any] = {
            "api_key": self.api_key,
            "stripe_version": self.api_version,
        }
        if idempotency_key:
            request_options["idempotency_key"] = idempotency_key

        try:
            return await asyncio.to_thread(func, *args, **params, **request_options)
        except stripe.InvalidRequestError as exc:
            if exc.code == "resource_missing" or exc.http_status == 404:
                raise ProviderNotFoundError(
                    str(exc.user_message or exc), code=exc.code, http_status=exc.http_status
                ) from exc
            # Still retryable; the message and param point at the rejected data
            logger.warning(
                "Stripe rejected request",
                operation=operation,
                code=exc.code,
                param=exc.param,
                http_status=exc.http_status,
            )
            detail = str(exc.user_message or exc)
            if exc.param:
                detail = f"{detail} (param: {exc.param})"
            raise ProviderError(
                f"Stripe rejected request: {detail}", code=exc.code, http_status=exc.http_status
            ) from exc
        except stripe.StripeError as exc:
            logger.warning(
                "Stripe call failed",
                operation=operation,
                code=exc.code,
                http_status=exc.http_status,
            )
            raise ProviderError(
                str(exc.user_message or exc), code=exc.code, http_status=exc.http_status
            ) from exc

    # -------------------------------------------------------------------------
    # Products
    # -------------------------------------------------------------------------

    async def create_product(
        self,
        *,
        name: str,
        description: str | None,
        images: list[str],
        metadata: dict[str, str],
        active: bool,
        idempotency_key: str | None = None,
    ) -> ProviderProduct:
        params: dict[str, Any] = {
            "name": name,
            "images": images,
            "metadata": metadata,
            "active": active,
        }
        # Stripe rejects empty strings on create
        if description:
            params["description"] = description
        obj = await self._call(
            "products.create", stripe.Product.create, idempotency_key=idempotency_key, **params
        )
        return _to_product(obj)

    async def retrieve_product(self, product_id: str) -> ProviderProduct:
        obj = await self._call("products.retrieve", stripe.Product.retrieve, product_id)
        return _to_product(obj)

    async def update_product(
        self,
        product_id: str,
        *,
        name: str,
        description: str | None,
        images: list[str],
        metadata: dict[str, str],
        active: bool,
    ) -> ProviderProduct:
        obj = await self._call(
            "products.update",
            stripe.Product.modify,
            product_id,
            name=name,
            description=description or "",
            images=images,
            metadata=metadata,
            active=active,
        )
        return _to_product(obj)

    async def deactivate_product(self, product_id: str) -> ProviderProduct:
        obj = await self._call(
            "products.deactivate", stripe.Product.modify, product_id, active=False
        )
        return _to_product(obj)

    # -------------------------------------------------------------------------
    # Prices
    # -------------------------------------------------------------------------

    async def create_price(
        self,
        *,
        product_id: str,
        unit_amount: int,
        metadata: dict[str, str],
        idempotency_key: str | None = None,
    ) -> ProviderPrice:
        obj = await self._call(
            "prices.create",
            stripe.Price.create,
            idempotency_key=idempotency_key,
            product=product_id,
            unit_amount=unit_amount,
            currency=self.currency,
            metadata=metadata,
        )
        return _to_price(obj)

    async def retrieve_price(self, price_id: str) -> ProviderPrice:
        obj = await self._call("prices.retrieve", stripe.Price.retrieve, price_id)
        return _to_price(obj)

    async def deactivate_price(self, price_id: str) -> ProviderPrice:
        obj = await self._call("prices.deactivate", stripe.Price.modify, price_id, active=False)
        return _to_price(obj)


@lru_cache
def get_provider() -> StripeProvider:
    """Get the cached provider client (FastAPI dependency)."""
    return StripeProvider(get_settings())
