"""Pytest configuration and fixtures."""

import itertools
from collections.abc import AsyncGenerator, Awaitable, Callable
from pathlib import Path
from typing import Any

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from catalog_sync.config import Settings, get_settings
from catalog_sync.exceptions import ProviderError, ProviderNotFoundError
from catalog_sync.infrastructure.database.connection import create_session_factory, get_session
from catalog_sync.infrastructure.database.models import Base, Product
from catalog_sync.infrastructure.redis import CacheService, get_cache
from catalog_sync.main import create_app
from catalog_sync.services.stripe_client import ProviderPrice, ProviderProduct, get_provider


class FakeStripeProvider:
    """In-memory Stripe catalog.

    Prices are immutable once created, exactly like the real API: the only
    change allowed is deactivation.
    """

    def __init__(self) -> None:
        self.products: dict[str, dict[str, Any]] = {}
        self.prices: dict[str, dict[str, Any]] = {}
        self.calls: list[str] = []
        self.failures: dict[str, Exception] = {}
        self._ids = itertools.count(1)
        self._idempotent: dict[str, Any] = {}

    def _record(self, method: str) -> None:
        self.calls.append(method)
        if method in self.failures:
            raise self.failures[method]

    def _product(self, product_id: str) -> dict[str, Any]:
        if product_id not in self.products:
            raise ProviderNotFoundError(f"No such product: '{product_id}'", code="resource_missing", http_status=404)
        return self.products[product_id]

    def _price(self, price_id: str) -> dict[str, Any]:
        if price_id not in self.prices:
            raise ProviderNotFoundError(f"No such price: '{price_id}'", code="resource_missing", http_status=404)
        return self.prices[price_id]

    def _price_view(self, price_id: str) -> ProviderPrice:
        price = self.prices[price_id]
        return ProviderPrice(
            id=price_id,
            product=price["product"],
            unit_amount=price["unit_amount"],
            active=price["active"],
        )

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
        self._record("create_product")
        if idempotency_key and idempotency_key in self._idempotent:
            return self._idempotent[idempotency_key]
        product_id = f"prod_{next(self._ids)}"
        self.products[product_id] = {
            "name": name,
            "description": description,
            "images": images,
            "metadata": metadata,
            "active": active,
        }
        result = ProviderProduct(id=product_id, active=active)
        if idempotency_key:
            self._idempotent[idempotency_key] = result
        return result

    async def retrieve_product(self, product_id: str) -> ProviderProduct:
        self._record("retrieve_product")
        product = self._product(product_id)
        return ProviderProduct(id=product_id, active=product["active"])

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
        self._record("update_product")
        product = self._product(product_id)
        product.update(
            name=name, description=description, images=images, metadata=metadata, active=active
        )
        return ProviderProduct(id=product_id, active=active)

    async def deactivate_product(self, product_id: str) -> ProviderProduct:
        self._record("deactivate_product")
        product = self._product(product_id)
        product["active"] = False
        return ProviderProduct(id=product_id, active=False)

    async def create_price(
        self,
        *,
        product_id: str,
        unit_amount: int,
        metadata: dict[str, str],
        idempotency_key: str | None = None,
    ) -> ProviderPrice:
        self._record("create_price")
        if idempotency_key and idempotency_key in self._idempotent:
            return self._idempotent[idempotency_key]
        self._product(product_id)
        price_id = f"price_{next(self._ids)}"
        self.prices[price_id] = {
            "product": product_id,
            "unit_amount": unit_amount,
            "currency": "eur",
            "metadata": metadata,
            "active": True,
        }
        result = self._price_view(price_id)
        if idempotency_key:
            self._idempotent[idempotency_key] = result
        return result

    async def retrieve_price(self, price_id: str) -> ProviderPrice:
        self._record("retrieve_price")
        self._price(price_id)
        return self._price_view(price_id)

    async def deactivate_price(self, price_id: str) -> ProviderPrice:
        self._record("deactivate_price")
        self._price(price_id)["active"] = False
        return self._price_view(price_id)

    def fail(self, method: str, error: Exception | None = None) -> None:
        """Make every call to ``method`` raise."""
        self.failures[method] = error or ProviderError("Rate limit exceeded", code="rate_limit", http_status=429)

    def forget_product(self, product_id: str) -> None:
        """Simulate a product removed on the Stripe side."""
        del self.products[product_id]

    def active_prices(self, product_id: str) -> list[str]:
        return [
            price_id
            for price_id, price in self.prices.items()
            if price["product"] == product_id and price["active"]
        ]


@pytest.fixture
def test_settings(tmp_path: Path) -> Settings:
    """Get test settings with overrides."""
    return Settings(
        app_env="test",
        debug=True,
        database_dsn=f"sqlite+aiosqlite:///{tmp_path / 'catalog.db'}",
        redis_host="localhost",
        redis_port=6379,
        stripe_secret_key="sk_test_123",
        sync_api_key="",
        sync_inter_job_delay_ms=0,
        sync_retry_base_delay_seconds=0,
    )


@pytest_asyncio.fixture
async def engine(test_settings: Settings) -> AsyncGenerator[AsyncEngine, None]:
    """File-backed SQLite engine with the schema created."""
    engine = create_async_engine(test_settings.database_url)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return create_session_factory(engine)


@pytest_asyncio.fixture
async def db_session(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


@pytest.fixture
def provider() -> FakeStripeProvider:
    return FakeStripeProvider()


@pytest.fixture
def cache() -> CacheService:
    """Cache without Redis: every lock is granted, nothing is cached."""
    return CacheService(None)


@pytest.fixture
def make_product(
    session_factory: async_sessionmaker[AsyncSession],
) -> Callable[..., Awaitable[Product]]:
    """Insert a product in its own transaction and return it."""

    async def factory(**overrides: Any) -> Product:
        fields: dict[str, Any] = {
            "title": "Käsitöökorv",
            "description": "Handwoven willow basket",
            "price": "45€",
            "image": "https://cdn.example.com/korv.jpg",
            "images": [],
            "category": "baskets",
            "subcategory": "willow",
            "available": True,
        }
        fields.update(overrides)
        async with session_factory() as session:
            product = Product(**fields)
            session.add(product)
            await session.commit()
            return product

    return factory


@pytest.fixture
def app(
    test_settings: Settings,
    session_factory: async_sessionmaker[AsyncSession],
    provider: FakeStripeProvider,
    cache: CacheService,
) -> Any:
    """Create test application."""

    def get_test_settings() -> Settings:
        return test_settings

    async def get_test_session() -> AsyncGenerator[AsyncSession, None]:
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    async def get_test_cache() -> CacheService:
        return cache

    app = create_app()
    app.dependency_overrides[get_settings] = get_test_settings
    app.dependency_overrides[get_session] = get_test_session
    app.dependency_overrides[get_provider] = lambda: provider
    app.dependency_overrides[get_cache] = get_test_cache
    return app


@pytest_asyncio.fixture
async def async_client(app: Any) -> AsyncGenerator[AsyncClient, None]:
    """Create asynchronous test client."""
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac
