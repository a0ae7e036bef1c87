"""
Key-value storage used by the payment service cache.

This module provides the ``Storage`` contract with an in-memory backend for
tests and single-process use, and a Redis backend for shared deployments.
Values are plain strings; callers serialize their own entities.
"""

from __future__ import annotations

from abc import ABC, abstractmethod

from redis.asyncio import Redis
from redis.exceptions import RedisError

from paybridge.core.config import Settings, storage_logger


class Storage(ABC):
    """
    Abstract base class for storage backends.

    Implementations must provide string get/set/remove, a membership check
    and a clear operation.
    """

    @abstractmethod
    async def get(self, key: str) -> str | None:
        """
        Get the value stored under a key.

        Args:
            key: The key to read.

        Returns:
            The stored string, or None if the key is absent.
        """
        pass

    @abstractmethod
    async def set(self, key: str, value: str) -> None:
        """
        Store a value under a key, replacing any previous value.

        Args:
            key: The key to write.
            value: The string value to store.
        """
        pass

    @abstractmethod
    async def remove(self, key: str) -> None:
        """
        Remove a key. Removing a missing key is a no-op.

        Args:
            key: The key to remove.
        """
        pass

    @abstractmethod
    async def contains_key(self, key: str) -> bool:
        """
        Check whether a key is present.

        Args:
            key: The key to look up.

        Returns:
            True if the key holds a value.
        """
        pass

    @abstractmethod
    async def clear(self) -> None:
        """Remove every key owned by this storage."""
        pass

    async def aclose(self) -> None:
        """Release backend resources. Safe to call more than once."""
        return None


class MemoryStorage(Storage):
    """
    In-memory storage backed by a dictionary.

    Note:
        Data is lost on restart and is not shared between processes.
    """

    def __init__(self, initial: dict[str, str] | None = None):
        self._store: dict[str, str] = dict(initial or {})

    async def get(self, key: str) -> str | None:
        return self._store.get(key)

    async def set(self, key: str, value: str) -> None:
        self._store[key] = value

    async def remove(self, key: str) -> None:
        self._store.pop(key, None)

    async def contains_key(self, key: str) -> bool:
        return key in self._store

    async def clear(self) -> None:
        self._store.clear()
        storage_logger.debug("Memory storage cleared")


class RedisStorage(Storage):
    """
    Redis storage with namespaced keys.

    Every key is stored as ``<prefix><key>`` so that ``clear`` only removes
    keys written through this instance's prefix.

    Example:
        >>> storage = RedisStorage.from_url("redis://localhost:6379/0")
        >>> await storage.set("payment_service_customer_id", "cus_123")
        >>> await storage.aclose()
    """

    def __init__(self, client: Redis, prefix: str = "paybridge:"):
        self._client = client
        self._prefix = prefix

    @classmethod
    def from_url(cls, url: str, prefix: str = "paybridge:") -> RedisStorage:
        """
        Create a storage from a Redis connection URL.

        Args:
            url: The Redis connection URL.
            prefix: Namespace prepended to every key.

        Returns:
            A new RedisStorage owning its client.
        """
        client = Redis.from_url(url, encoding="utf-8", decode_responses=False)
        storage_logger.info(f"Redis storage initialized (prefix: {prefix})")
        return cls(client, prefix)

    def _key(self, key: str) -> str:
        return f"{self._prefix}{key}"

    async def get(self, key: str) -> str | None:
        try:
            value = await self._client.get(self._key(key))
        except RedisError as e:
            storage_logger.error(f"Redis get({key}) failed: {str(e)}")
            raise
        if value is None:
            return None
        return value.decode("utf-8") if isinstance(value, bytes) else value

    async def set(self, key: str, value: str) -> None:
        try:
            await self._client.set(self._key(key), value)
        except RedisError as e:
            storage_logger.error(f"Redis set({key}) failed: {str(e)}")
            raise
        storage_logger.debug(f"Redis set({key}) successful")

    async def remove(self, key: str) -> None:
        try:
            await self._client.delete(self._key(key))
        except RedisError as e:
            storage_logger.error(f"Redis remove({key}) failed: {str(e)}")
            raise

    async def contains_key(self, key: str) -> bool:
        try:
            return bool(await self._client.exists(self._key(key)))
        except RedisError as e:
            storage_logger.error(f"Redis exists({key}) failed: {str(e)}")
            raise

    async def clear(self) -> None:
        """Delete every key under the prefix, using SCAN to avoid blocking Redis."""
        pattern = f"{self._prefix}*"
        deleted_count = 0
        cursor = 0
        try:
            while True:
                cursor, keys = await self._client.scan(
                    cursor=cursor, match=pattern, count=100
                )
                if keys:
                    deleted_count += await self._client.delete(*keys)
                if cursor == 0:
                    break
        except RedisError as e:
            storage_logger.error(f"Redis clear({pattern}) failed: {str(e)}")
            raise
        storage_logger.debug(f"Redis clear({pattern}) deleted {deleted_count} keys")

    async def aclose(self) -> None:
        try:
            await self._client.aclose()
            storage_logger.info("Redis storage closed")
        except RedisError as e:
            storage_logger.warning(f"Error closing Redis storage: {str(e)}")


def create_storage(settings: Settings) -> Storage:
    """
    Build the storage backend selected by ``STORAGE_BACKEND``.

    Args:
        settings: Application settings.

    Returns:
        A MemoryStorage or RedisStorage instance.
    """
    if settings.STORAGE_BACKEND == "redis":
        return RedisStorage.from_url(settings.REDIS_URL, settings.STORAGE_KEY_PREFIX)
    return MemoryStorage()


__all__ = ["MemoryStorage", "RedisStorage", "Storage", "create_storage"]
