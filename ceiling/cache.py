"""
Ceiling Caching Layer.

Pluggable cache backends for the authorization server's published key set,
supporting both in-memory and Redis-backed distributed caching.
"""

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from collections import OrderedDict
from dataclasses import dataclass
from typing import Callable, Dict, Optional

logger = logging.getLogger(__name__)


@dataclass
class CacheEntry:
    """Represents a cached value with metadata."""

    value: str
    cached_at: float
    ttl: int
    hits: int = 0


class CacheInterface(ABC):
    """Abstract interface for cache implementations."""

    @abstractmethod
    async def get(self, key: str) -> Optional[str]:
        """Get a value from cache. Returns None if not found or expired."""
        pass

    @abstractmethod
    async def set(self, key: str, value: str, ttl: Optional[int] = None) -> None:
        """Set a value in cache with TTL in seconds."""
        pass

    @abstractmethod
    async def delete(self, key: str) -> bool:
        """Delete a key from cache. Returns True if key existed."""
        pass

    @abstractmethod
    async def clear(self) -> None:
        """Clear all entries from cache."""
        pass


class MemoryCache(CacheInterface):
    """
    In-memory LRU cache with TTL support.

    Example:
        >>> cache = MemoryCache(max_size=100, default_ttl=60)
        >>> await cache.set('http://127.0.0.1:3003', '{"keys": [...]}')
        >>> jwks = await cache.get('http://127.0.0.1:3003')
    """

    def __init__(
        self,
        max_size: int = 1000,
        default_ttl: int = 60,
        clock: Callable[[], float] = time.time,
    ):
        """
        Initialize the memory cache.

        Args:
            max_size: Maximum number of entries before LRU eviction.
            default_ttl: Default TTL in seconds.
            clock: Time source, in epoch seconds.
        """
        self._cache: "OrderedDict[str, CacheEntry]" = OrderedDict()
        self._max_size = max_size
        self._default_ttl = default_ttl
        self._clock = clock
        self._lock = asyncio.Lock()
        self._stats = {"hits": 0, "misses": 0, "evictions": 0}

    async def get(self, key: str) -> Optional[str]:
        async with self._lock:
            entry = self._cache.get(key)
            if entry is None:
                self._stats["misses"] += 1
                return None

            if self._clock() >= entry.cached_at + entry.ttl:
                del self._cache[key]
                self._stats["misses"] += 1
                return None

            self._cache.move_to_end(key)
            entry.hits += 1
            self._stats["hits"] += 1
            return entry.value

    async def set(self, key: str, value: str, ttl: Optional[int] = None) -> None:
        async with self._lock:
            self._cache.pop(key, None)
            while len(self._cache) >= self._max_size:
                oldest_key = next(iter(self._cache))
                del self._cache[oldest_key]
                self._stats["evictions"] += 1

            self._cache[key] = CacheEntry(
                value=value,
                cached_at=self._clock(),
                ttl=ttl if ttl is not None else self._default_ttl,
            )

    async def delete(self, key: str) -> bool:
        async with self._lock:
            if key in self._cache:
                del self._cache[key]
                return True
            return False

    async def clear(self) -> None:
        async with self._lock:
            self._cache.clear()

    @property
    def stats(self) -> Dict[str, int]:
        """Return cache statistics."""
        return {**self._stats, "size": len(self._cache), "max_size": self._max_size}


class RedisCache(CacheInterface):
    """
    Key-set cache shared by every resource server instance through Redis.

    One fetch of ``/auth/jwks`` then serves the whole fleet until the TTL
    runs out. A Redis failure counts as a miss: the caller fetches the key
    set itself and validation is never blocked on the cache.

    Example:
        >>> import redis.asyncio as redis
        >>> cache = RedisCache(redis.from_url("redis://localhost:6379/0"), default_ttl=60)
        >>> keys = RemoteKeySet("http://127.0.0.1:3003", cache=cache)
    """

    def __init__(self, redis_client, key_prefix: str = "ceiling:jwks:", default_ttl: int = 60):
        self._redis = redis_client
        self._prefix = key_prefix
        self._default_ttl = default_ttl
        self._stats = {"hits": 0, "misses": 0, "errors": 0}

    def _failed(self, operation: str, error: Exception) -> None:
        self._stats["errors"] += 1
        logger.warning(f"Key-set cache {operation} failed on Redis: {error}")

    async def get(self, key: str) -> Optional[str]:
        try:
            raw = await self._redis.get(self._prefix + key)
        except Exception as e:
            self._failed("read", e)
            raw = None

        if raw is None:
            self._stats["misses"] += 1
            return None
        self._stats["hits"] += 1
        return raw.decode("utf-8") if isinstance(raw, bytes) else raw

    async def set(self, key: str, value: str, ttl: Optional[int] = None) -> None:
        try:
            await self._redis.set(self._prefix + key, value, ex=ttl or self._default_ttl)
        except Exception as e:
            self._failed("write", e)

    async def delete(self, key: str) -> bool:
        try:
            return bool(await self._redis.delete(self._prefix + key))
        except Exception as e:
            self._failed("delete", e)
            return False

    async def clear(self) -> None:
        try:
            keys = [k async for k in self._redis.scan_iter(match=f"{self._prefix}*")]
            if keys:
                await self._redis.delete(*keys)
        except Exception as e:
            self._failed("clear", e)

    @property
    def stats(self) -> Dict[str, int]:
        return self._stats.copy()
