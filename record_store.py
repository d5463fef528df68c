"""
Key-value record stores backing the mastery store.

The engine only needs generic get/set/delete by key plus key listing by glob
pattern. Values are JSON-compatible dictionaries. ``InMemoryRecordStore`` is
used for tests and local runs, ``RedisRecordStore`` for deployments.
"""

import asyncio
import fnmatch
import json
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

from redis.asyncio import ConnectionPool, Redis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import RedisError
from redis.exceptions import TimeoutError as RedisTimeoutError
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
    before_sleep_log,
)

from mastery_config import RedisConfig, get_config
from mastery_errors import RecordStoreError


logger = logging.getLogger(__name__)


class RecordStore(ABC):
    """Async key-value store interface."""

    @abstractmethod
    async def get(self, key: str) -> Optional[Dict[str, Any]]:
        """Return the value stored under ``key`` or ``None``."""

    @abstractmethod
    async def set(self, key: str, value: Dict[str, Any]) -> None:
        """Store ``value`` under ``key``, replacing any previous value."""

    @abstractmethod
    async def delete(self, key: str) -> bool:
        """Delete ``key``. Returns True if something was removed."""

    @abstractmethod
    async def keys(self, pattern: str) -> List[str]:
        """List keys matching a glob pattern."""

    async def close(self) -> None:
        """Release any held resources."""

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()


class InMemoryRecordStore(RecordStore):
    """Process-local record store.

    Values are stored as JSON strings so callers never share mutable state
    with the store.
    """

    def __init__(self):
        self._data: Dict[str, str] = {}
        self._lock = asyncio.Lock()

    async def get(self, key: str) -> Optional[Dict[str, Any]]:
        async with self._lock:
            raw = self._data.get(key)
        return json.loads(raw) if raw is not None else None

    async def set(self, key: str, value: Dict[str, Any]) -> None:
        raw = json.dumps(value, default=str)
        async with self._lock:
            self._data[key] = raw

    async def delete(self, key: str) -> bool:
        async with self._lock:
            return self._data.pop(key, None) is not None

    async def keys(self, pattern: str) -> List[str]:
        async with self._lock:
            return sorted(k for k in self._data if fnmatch.fnmatchcase(k, pattern))

    def clear(self):
        """Drop every stored value."""
        self._data.clear()

    def snapshot(self) -> Dict[str, Dict[str, Any]]:
        """Copy of every stored value, keyed by record key."""
        return {key: json.loads(raw) for key, raw in self._data.items()}

    def load(self, values: Dict[str, Dict[str, Any]]) -> None:
        """Replace the store contents with ``values``."""
        self._data = {key: json.dumps(value, default=str) for key, value in values.items()}

    def __len__(self) -> int:
        return len(self._data)


_transient_redis_retry = retry(
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=0.1, min=0.1, max=1),
    retry=retry_if_exception_type((RedisConnectionError, RedisTimeoutError)),
    before_sleep=before_sleep_log(logger, logging.WARNING),
    reraise=True,
)


class RedisRecordStore(RecordStore):
    """Record store on Redis with JSON serialization.

    Example:
        store = RedisRecordStore()
        await store.connect()
        await store.set("user:1:mastery:algebra", {...})
        await store.close()
    """

    def __init__(self,
                 settings: Optional[RedisConfig] = None,
                 client: Optional[Redis] = None):
        """Initialize the Redis record store.

        Args:
            settings: Redis settings, defaults to the global configuration
            client: Pre-built client, mainly for tests
        """
        self.settings = settings or get_config().redis
        self._pool: Optional[ConnectionPool] = None
        self._redis: Optional[Redis] = client

    async def connect(self) -> None:
        """Create the connection pool and verify connectivity.

        Raises:
            RecordStoreError: If the connection fails
        """
        if self._redis is not None:
            return
        try:
            self._pool = ConnectionPool.from_url(
                self.settings.url,
                max_connections=self.settings.max_connections,
                decode_responses=True,
            )
            client = Redis(connection_pool=self._pool)
            await client.ping()
            self._redis = client
            logger.info(f"Connected to Redis at {self.settings.url}")
        except RedisError as e:
            raise RecordStoreError("Failed to connect to Redis", e) from e

    async def close(self) -> None:
        """Close the connection pool."""
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None
        if self._pool is not None:
            await self._pool.disconnect()
            self._pool = None

    async def __aenter__(self):
        await self.connect()
        return self

    def _ensure_connected(self) -> Redis:
        if self._redis is None:
            raise RecordStoreError("Redis client not connected. Call connect() first.")
        return self._redis

    def _key(self, key: str) -> str:
        return f"{self.settings.key_prefix}{key}"

    def _strip(self, key: str) -> str:
        prefix = self.settings.key_prefix
        return key[len(prefix):] if prefix and key.startswith(prefix) else key

    @_transient_redis_retry
    async def _get_raw(self, key: str) -> Optional[str]:
        return await self._ensure_connected().get(self._key(key))

    async def get(self, key: str) -> Optional[Dict[str, Any]]:
        try:
            raw = await self._get_raw(key)
        except RedisError as e:
            logger.error(f"Failed to get record {key}: {e}")
            raise RecordStoreError(f"Failed to get record {key}", e) from e
        if raw is None:
            return None
        try:
            value = json.loads(raw)
        except json.JSONDecodeError as e:
            logger.error(f"Record {key} is not valid JSON: {e}")
            raise RecordStoreError(f"Record {key} is not valid JSON", e) from e
        if not isinstance(value, dict):
            raise RecordStoreError(f"Record {key} is not a JSON object")
        return value

    @_transient_redis_retry
    async def _set_raw(self, key: str, raw: str) -> None:
        await self._ensure_connected().set(self._key(key), raw)

    async def set(self, key: str, value: Dict[str, Any]) -> None:
        raw = json.dumps(value, ensure_ascii=False, default=str)
        try:
            await self._set_raw(key, raw)
        except RedisError as e:
            logger.error(f"Failed to set record {key}: {e}")
            raise RecordStoreError(f"Failed to set record {key}", e) from e

    async def delete(self, key: str) -> bool:
        try:
            removed = await self._ensure_connected().delete(self._key(key))
        except RedisError as e:
            logger.error(f"Failed to delete record {key}: {e}")
            raise RecordStoreError(f"Failed to delete record {key}", e) from e
        return removed > 0

    async def keys(self, pattern: str) -> List[str]:
        redis = self._ensure_connected()
        try:
            found = [
                self._strip(key)
                async for key in redis.scan_iter(match=self._key(pattern))
            ]
        except RedisError as e:
            logger.error(f"Failed to scan keys {pattern}: {e}")
            raise RecordStoreError(f"Failed to scan keys {pattern}", e) from e
        return sorted(found)
