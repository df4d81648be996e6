from abc import ABC, abstractmethod
from typing import Optional, Type, TypeVar, Generic
import asyncio
import time

from pydantic import BaseModel, ValidationError
from redis.asyncio import Redis
from redis.exceptions import RedisError

from canva_relay.config import Settings
from canva_relay.logging_util import get_logger
from canva_relay.sdk.redis_client import RedisClientFactory

logger = get_logger(__name__)

T = TypeVar("T", bound=BaseModel)


class StoreError(Exception):
    """The backing store could not complete the operation."""


class CorruptRecordError(StoreError):
    """A stored value exists but does not match the record schema."""


class PersistenceProvider(ABC, Generic[T]):
    """
    Key-value storage for one pydantic record type.

    Values are written with `model_dump_json` and read back through
    `model_validate_json`, so callers only ever see validated models.
    """

    def __init__(self, model_class: Type[T]):
        self.model_class = model_class

    def _decode(self, key: str, raw: Optional[str]) -> Optional[T]:
        if raw is None:
            return None
        try:
            return self.model_class.model_validate_json(raw)
        except ValidationError as e:
            raise CorruptRecordError(f"Stored {self.model_class.__name__} for key {key!r} is invalid") from e

    @abstractmethod
    async def set(self, key: str, value: T, ttl_in_sec: Optional[int] = None) -> None:
        """Store the model instance with an optional TTL."""

    @abstractmethod
    async def get(self, key: str) -> Optional[T]:
        """Retrieve and validate the model instance."""

    @abstractmethod
    async def delete(self, key: str) -> None:
        """Remove the key from storage."""

    @abstractmethod
    async def pop(self, key: str) -> Optional[T]:
        """Read and remove the key in one step. A second pop returns None."""

    @abstractmethod
    async def ping(self) -> bool:
        """Check the backing store is reachable."""


class InMemoryProvider(PersistenceProvider[T]):
    """Single-process store for development and tests."""

    def __init__(self, model_class: Type[T]):
        super().__init__(model_class)
        self._data: dict[str, str] = {}
        self._expires_at: dict[str, float] = {}

    def _expired(self, key: str, now: float) -> bool:
        deadline = self._expires_at.get(key)
        return deadline is not None and deadline <= now

    def _evict(self, key: str) -> None:
        self._data.pop(key, None)
        self._expires_at.pop(key, None)

    async def set(self, key: str, value: T, ttl_in_sec: Optional[int] = None) -> None:
        self._data[key] = value.model_dump_json()
        if ttl_in_sec:
            self._expires_at[key] = time.monotonic() + ttl_in_sec
        else:
            self._expires_at.pop(key, None)

    async def get(self, key: str) -> Optional[T]:
        if self._expired(key, time.monotonic()):
            self._evict(key)
            return None
        return self._decode(key, self._data.get(key))

    async def delete(self, key: str) -> None:
        self._evict(key)

    async def pop(self, key: str) -> Optional[T]:
        expired = self._expired(key, time.monotonic())
        raw = self._data.get(key)
        self._evict(key)
        if expired:
            return None
        return self._decode(key, raw)

    async def ping(self) -> bool:
        return True

    def cleanup_expired(self) -> int:
        """Removes expired items and returns the count of deleted items."""
        now = time.monotonic()
        expired = [key for key in self._expires_at if self._expired(key, now)]
        for key in expired:
            logger.debug(f"Cleaning up expired key: {key}")
            self._evict(key)
        return len(expired)


class RedisProvider(PersistenceProvider[T]):
    def __init__(self, model_class: Type[T], client: Redis, prefix: str):
        super().__init__(model_class)
        self.client = client
        self.prefix = prefix

    def _get_key(self, key: str) -> str:
        return f"{self.prefix}:{key}"

    async def set(self, key: str, value: T, ttl_in_sec: Optional[int] = None) -> None:
        try:
            await self.client.set(self._get_key(key), value.model_dump_json(), ex=ttl_in_sec)
        except RedisError as e:
            raise StoreError(f"Redis SET failed for scope {self.prefix}") from e

    async def get(self, key: str) -> Optional[T]:
        try:
            raw = await self.client.get(self._get_key(key))
        except RedisError as e:
            raise StoreError(f"Redis GET failed for scope {self.prefix}") from e
        return self._decode(key, raw)

    async def delete(self, key: str) -> None:
        try:
            await self.client.delete(self._get_key(key))
        except RedisError as e:
            raise StoreError(f"Redis DEL failed for scope {self.prefix}") from e

    async def pop(self, key: str) -> Optional[T]:
        try:
            raw = await self.client.getdel(self._get_key(key))
        except RedisError as e:
            raise StoreError(f"Redis GETDEL failed for scope {self.prefix}") from e
        return self._decode(key, raw)

    async def ping(self) -> bool:
        try:
            return bool(await self.client.ping())
        except RedisError as e:
            raise StoreError("Redis PING failed") from e


class PersistenceFactory:
    """Creates providers for a record type and key scope from the settings."""

    def __init__(self, settings: Settings, redis_client: Optional[Redis] = None):
        self.settings = settings
        self._redis_client = redis_client

    def _client(self) -> Redis:
        if self._redis_client is None:
            self._redis_client = RedisClientFactory.create(self.settings)
        return self._redis_client

    def create(self, model_class: Type[T], scope: str) -> PersistenceProvider[T]:
        if self.settings.storage_backend == "redis":
            return RedisProvider(model_class=model_class, client=self._client(), prefix=scope)
        return InMemoryProvider(model_class=model_class)

    async def close(self) -> None:
        if self._redis_client is not None:
            await self._redis_client.aclose()
            self._redis_client = None


async def ttl_cleanup_task(provider: InMemoryProvider, interval_seconds: int = 60):
    logger.debug(f"Starting TTL cleanup task for {provider.model_class.__name__} store")
    try:
        while True:
            removed = provider.cleanup_expired()
            if removed:
                logger.debug(f"TTL cleanup removed {removed} expired keys")
            await asyncio.sleep(interval_seconds)
    except asyncio.CancelledError:
        logger.debug("TTL cleanup task cancelled")
