"""
Tests for the storage backends.
"""

from unittest.mock import AsyncMock, patch

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from paybridge.core.config import Settings
from paybridge.core.services.storage import (
    MemoryStorage,
    RedisStorage,
    create_storage,
)


@pytest.fixture
def redis_client():
    client = AsyncMock()
    client.get.return_value = None
    client.exists.return_value = 0
    return client


@pytest.fixture
def redis_storage(redis_client):
    return RedisStorage(redis_client, prefix="test:")


class TestMemoryStorage:

    async def test_set_get_remove(self, memory_storage):
        await memory_storage.set("k", "v")

        assert await memory_storage.get("k") == "v"
        assert await memory_storage.contains_key("k") is True

        await memory_storage.remove("k")

        assert await memory_storage.get("k") is None
        assert await memory_storage.contains_key("k") is False

    async def test_remove_missing_is_noop(self, memory_storage):
        await memory_storage.remove("missing")

    async def test_overwrite(self, memory_storage):
        await memory_storage.set("k", "v1")
        await memory_storage.set("k", "v2")

        assert await memory_storage.get("k") == "v2"

    async def test_clear(self):
        storage = MemoryStorage({"a": "1", "b": "2"})

        await storage.clear()

        assert await storage.contains_key("a") is False
        assert await storage.contains_key("b") is False

    async def test_instances_are_isolated(self):
        first, second = MemoryStorage(), MemoryStorage()

        await first.set("k", "v")

        assert await second.get("k") is None


class TestRedisStorage:

    async def test_get_decodes_bytes(self, redis_storage, redis_client):
        redis_client.get.return_value = b"cus_123"

        assert await redis_storage.get("customer") == "cus_123"
        redis_client.get.assert_awaited_once_with("test:customer")

    async def test_get_missing(self, redis_storage):
        assert await redis_storage.get("customer") is None

    async def test_set_uses_prefix(self, redis_storage, redis_client):
        await redis_storage.set("customer", "cus_123")

        redis_client.set.assert_awaited_once_with("test:customer", "cus_123")

    async def test_remove_and_contains(self, redis_storage, redis_client):
        redis_client.exists.return_value = 1

        assert await redis_storage.contains_key("customer") is True
        await redis_storage.remove("customer")

        redis_client.exists.assert_awaited_once_with("test:customer")
        redis_client.delete.assert_awaited_once_with("test:customer")

    async def test_clear_scans_prefix(self, redis_storage, redis_client):
        redis_client.scan.side_effect = [(5, [b"test:a", b"test:b"]), (0, [b"test:c"])]
        redis_client.delete.side_effect = [2, 1]

        await redis_storage.clear()

        assert redis_client.scan.await_count == 2
        redis_client.scan.assert_any_await(cursor=0, match="test:*", count=100)
        redis_client.scan.assert_any_await(cursor=5, match="test:*", count=100)
        redis_client.delete.assert_any_await(b"test:a", b"test:b")
        redis_client.delete.assert_any_await(b"test:c")

    async def test_clear_skips_empty_batches(self, redis_storage, redis_client):
        redis_client.scan.return_value = (0, [])

        await redis_storage.clear()

        redis_client.delete.assert_not_awaited()

    @pytest.mark.parametrize("operation, args", [("get", ("k",)), ("set", ("k", "v")), ("remove", ("k",))])
    async def test_redis_errors_propagate(self, redis_storage, redis_client, operation, args):
        getattr(redis_client, operation if operation != "remove" else "delete").side_effect = (
            RedisConnectionError("down")
        )

        with pytest.raises(RedisConnectionError):
            await getattr(redis_storage, operation)(*args)

    async def test_aclose_swallows_close_errors(self, redis_storage, redis_client):
        redis_client.aclose.side_effect = RedisConnectionError("gone")

        await redis_storage.aclose()

        redis_client.aclose.assert_awaited_once()

    def test_from_url(self):
        with patch("paybridge.core.services.storage.Redis.from_url") as mock_from_url:
            storage = RedisStorage.from_url("redis://cache:6379/1", prefix="app:")

        mock_from_url.assert_called_once_with(
            "redis://cache:6379/1", encoding="utf-8", decode_responses=False
        )
        assert storage._prefix == "app:"


class TestCreateStorage:

    def test_memory_default(self):
        assert isinstance(create_storage(Settings(STORAGE_BACKEND="memory")), MemoryStorage)

    def test_redis_backend(self):
        settings = Settings(
            STORAGE_BACKEND="redis", REDIS_URL="redis://cache:6379/0", STORAGE_KEY_PREFIX="pb:"
        )

        with patch("paybridge.core.services.storage.Redis.from_url") as mock_from_url:
            storage = create_storage(settings)

        assert isinstance(storage, RedisStorage)
        mock_from_url.assert_called_once()
        assert mock_from_url.call_args[0][0] == "redis://cache:6379/0"
