"""Unit tests for Redis cache service."""

from typing import Any

import orjson
import pytest

from catalog_sync.infrastructure.redis import CacheService


class FakeRedis:
    """Implements the handful of Redis commands CacheService uses."""

    def __init__(self) -> None:
        self.data: dict[str, Any] = {}

    async def get(self, key: str) -> Any:
        return self.data.get(key)

    async def set(self, key: str, value: Any, ex: int | None = None, nx: bool = False) -> bool | None:
        if nx and key in self.data:
            return None
        self.data[key] = value
        return True

    async def delete(self, key: str) -> int:
        return 1 if self.data.pop(key, None) is not None else 0

    async def eval(self, script: str, numkeys: int, key: str, token: str) -> int:
        if self.data.get(key) == token:
            del self.data[key]
            return 1
        return 0

    async def ping(self) -> bool:
        return True


class BrokenRedis(FakeRedis):
    async def set(self, *args: Any, **kwargs: Any) -> bool | None:
        raise ConnectionError("Connection refused")


class TestCacheServiceGracefulDegradation:
    """CacheService should no-op safely when Redis is unavailable."""

    @pytest.fixture
    def cache(self) -> CacheService:
        return CacheService(None)

    @pytest.mark.asyncio
    async def test_get_returns_none(self, cache: CacheService) -> None:
        assert await cache.get("any-key") is None

    @pytest.mark.asyncio
    async def test_set_is_noop(self, cache: CacheService) -> None:
        await cache.set("key", {"data": "value"})  # should not raise

    @pytest.mark.asyncio
    async def test_delete_is_noop(self, cache: CacheService) -> None:
        await cache.delete("key")  # should not raise

    @pytest.mark.asyncio
    async def test_health_check_returns_false(self, cache: CacheService) -> None:
        assert await cache.health_check() is False

    @pytest.mark.asyncio
    async def test_lock_always_granted(self, cache: CacheService) -> None:
        assert await cache.acquire_lock("lock", 60)
        assert await cache.acquire_lock("lock", 60)

    @pytest.mark.asyncio
    async def test_lock_granted_when_redis_errors(self) -> None:
        cache = CacheService(BrokenRedis())
        assert await cache.acquire_lock("lock", 60)


class TestCacheServiceWithRedis:
    @pytest.fixture
    def redis(self) -> FakeRedis:
        return FakeRedis()

    @pytest.fixture
    def cache(self, redis: FakeRedis) -> CacheService:
        return CacheService(redis)

    @pytest.mark.asyncio
    async def test_round_trips_json(self, cache: CacheService, redis: FakeRedis) -> None:
        await cache.set("stats", {"pending": 3})

        assert orjson.loads(redis.data["stats"]) == {"pending": 3}
        assert await cache.get("stats") == {"pending": 3}

    @pytest.mark.asyncio
    async def test_lock_is_exclusive(self, cache: CacheService) -> None:
        token = await cache.acquire_lock("lock", 60)

        assert token is not None
        assert await cache.acquire_lock("lock", 60) is None

        await cache.release_lock("lock", token)
        assert await cache.acquire_lock("lock", 60) is not None

    @pytest.mark.asyncio
    async def test_release_requires_matching_token(self, cache: CacheService, redis: FakeRedis) -> None:
        token = await cache.acquire_lock("lock", 60)

        await cache.release_lock("lock", "someone-else")

        assert redis.data["lock"] == token
