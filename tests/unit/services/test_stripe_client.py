"""Unit tests for the Stripe SDK wrapper."""

from types import SimpleNamespace
from typing import Any

import pytest
import stripe

from catalog_sync.config import Settings
from catalog_sync.exceptions import ProviderError, ProviderNotFoundError
from catalog_sync.services.stripe_client import ProviderPrice, ProviderProduct, StripeProvider


@pytest.fixture
def stripe_provider(test_settings: Settings) -> StripeProvider:
    return StripeProvider(test_settings)


class TestRequests:
    @pytest.mark.asyncio
    async def test_create_product_sends_request_options(
        self, stripe_provider: StripeProvider, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        captured: dict[str, Any] = {}

        def fake_create(**params: Any) -> SimpleNamespace:
            captured.update(params)
            return SimpleNamespace(id="prod_1", active=True)

        monkeypatch.setattr(stripe.Product, "create", fake_create)

        result = await stripe_provider.create_product(
            name="Korv",
            description="",
            images=[],
            metadata={"cms_product_id": "p1"},
            active=True,
            idempotency_key="catalog-sync-1-product-abc",
        )

        assert result == ProviderProduct(id="prod_1", active=True)
        assert captured["api_key"] == "sk_test_123"
        assert captured["stripe_version"] == stripe_provider.api_version
        assert captured["idempotency_key"] == "catalog-sync-1-product-abc"
        assert "description" not in captured

    @pytest.mark.asyncio
    async def test_create_price_uses_configured_currency(
        self, stripe_provider: StripeProvider, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        captured: dict[str, Any] = {}

        def fake_create(**params: Any) -> SimpleNamespace:
            captured.update(params)
            return SimpleNamespace(id="price_1", product="prod_1", unit_amount=34900, active=True)

        monkeypatch.setattr(stripe.Price, "create", fake_create)

        price = await stripe_provider.create_price(product_id="prod_1", unit_amount=34900, metadata={})

        assert price == ProviderPrice(id="price_1", product="prod_1", unit_amount=34900, active=True)
        assert captured["currency"] == "eur"
        assert "idempotency_key" not in captured

    @pytest.mark.asyncio
    async def test_expanded_price_product(
        self, stripe_provider: StripeProvider, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        def fake_retrieve(price_id: str, **params: Any) -> SimpleNamespace:
            return SimpleNamespace(
                id=price_id, product=SimpleNamespace(id="prod_9"), unit_amount=100, active=False
            )

        monkeypatch.setattr(stripe.Price, "retrieve", fake_retrieve)

        price = await stripe_provider.retrieve_price("price_9")

        assert price.product == "prod_9"
        assert price.active is False


class TestErrors:
    @pytest.mark.asyncio
    async def test_not_configured(self, test_settings: Settings) -> None:
        unconfigured = StripeProvider(test_settings.model_copy(update={"stripe_secret_key": ""}))

        with pytest.raises(ProviderError) as exc_info:
            await unconfigured.retrieve_product("prod_1")

        assert exc_info.value.code == "not_configured"

    @pytest.mark.asyncio
    async def test_resource_missing_maps_to_not_found(
        self, stripe_provider: StripeProvider, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        def fake_modify(product_id: str, **params: Any) -> None:
            raise stripe.InvalidRequestError(
                f"No such product: '{product_id}'", "id", code="resource_missing", http_status=404
            )

        monkeypatch.setattr(stripe.Product, "modify", fake_modify)

        with pytest.raises(ProviderNotFoundError) as exc_info:
            await stripe_provider.deactivate_product("prod_gone")

        assert exc_info.value.http_status == 404

    @pytest.mark.asyncio
    async def test_other_errors_map_to_provider_error(
        self, stripe_provider: StripeProvider, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        def fake_modify(price_id: str, **params: Any) -> None:
            raise stripe.RateLimitError("Too many requests", http_status=429)

        monkeypatch.setattr(stripe.Price, "modify", fake_modify)

        with pytest.raises(ProviderError) as exc_info:
            await stripe_provider.deactivate_price("price_1")

        assert not isinstance(exc_info.value, ProviderNotFoundError)
        assert exc_info.value.http_status == 429

    @pytest.mark.asyncio
    async def test_rejected_request_names_param(
        self, stripe_provider: StripeProvider, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        def fake_create(**params: Any) -> None:
            raise stripe.InvalidRequestError(
                "Amount must be at least 50 cents",
                "unit_amount",
                code="amount_too_small",
                http_status=400,
            )

        monkeypatch.setattr(stripe.Price, "create", fake_create)

        with pytest.raises(ProviderError) as exc_info:
            await stripe_provider.create_price(product_id="prod_1", unit_amount=30, metadata={})

        assert not isinstance(exc_info.value, ProviderNotFoundError)
        assert exc_info.value.code == "amount_too_small"
        assert str(exc_info.value) == (
            "Stripe rejected request: Amount must be at least 50 cents (param: unit_amount)"
        )
