"""
Cache adapters for resonance scores and cluster snapshots

The engine only talks to the CacheAdapter interface, so in-memory and
distributed (Redis) caches are interchangeable. A cache is purely an
optimization: with NullCache everything still works, only slower.
"""
import asyncio
import json
import logging
import time
from typing import Any, Dict, Optional, Tuple

import redis.asyncio as redis

logger = logging.getLogger(__name__)


class CacheAdapter:
    """
    Interface for key/value caches with TTL

    Values must be JSON-serializable (floats, dicts, lists).
    """

    async def get(self, key: str) -> Optional[Any]:
        raise NotImplementedError(f"{self.__class__.__name__} must implement get()")

    async def set(self, key: str, value: Any, ttl: Optional[int] = None) -> None:
        raise NotImplementedError(f"{self.__class__.__name__} must implement set()")

    async def delete(self, *keys: str) -> None:
        raise NotImplementedError(f"{self.__class__.__name__} must implement delete()")

    async def close(self) -> None:
        """Release connections (no-op by default)"""


class InMemoryCache(CacheAdapter):
    """In-process cache with TTL, guarded by an asyncio lock"""

    def __init__(self, default_ttl: int = 3600, clock=time.monotonic):
        self.cache: Dict[str, Tuple[Any, float]] = {}
        self.lock = asyncio.Lock()
        self.default_ttl = default_ttl
        self.clock = clock

    async def get(self, key: str) -> Optional[Any]:
        """Get value from cache if not expired"""
        async with self.lock:
            if key in self.cache:
                value, expiry = self.cache[key]
                if self.clock() < expiry:
                    return value
                # Clean up expired entry
                del self.cache[key]
            return None

    async def set(self, key: str, value: Any, ttl: Optional[int] = None) -> None:
        """Set value in cache with TTL (seconds)"""
        ttl = ttl or self.default_ttl
        expiry = self.clock() + ttl
        async with self.lock:
            self.cache[key] = (value, expiry)

    async def delete(self, *keys: str) -> None:
        """Delete entries from cache"""
        async with self.lock:
            for key in keys:
                self.cache.pop(key, None)

    async def clear(self) -> None:
        """Clear all cache entries"""
        async with self.lock:
            self.cache.clear()

    async def cleanup_expired(self) -> int:
        """Remove all expired entries, returns how many were dropped"""
        now = self.clock()
        async with self.lock:
            expired_keys = [k for k, (_, expiry) in self.cache.items() if now >= expiry]
            for key in expired_keys:
                del self.cache[key]
        return len(expired_keys)

    def __len__(self) -> int:
        return len(self.cache)


class NullCache(CacheAdapter):
    """Always-missing cache"""

    async def get(self, key: str) -> Optional[Any]:
        return None

    async def set(self, key: str, value: Any, ttl: Optional[int] = None) -> None:
        return None

    async def delete(self, *keys: str) -> None:
        return None


class RedisCache(CacheAdapter):
    """
    Redis-backed cache (values stored as JSON with SETEX)

    Keys are namespaced with a prefix so several services can share one
    Redis instance.
    """

    def __init__(self, redis_url: str, default_ttl: int = 3600, prefix: str = "starcluster:"):
        self.redis = None
        self.redis_url = redis_url
        self.default_ttl = default_ttl
        self.prefix = prefix

    async def connect(self):
        """Initialize Redis connection"""
        self.redis = redis.from_url(self.redis_url, decode_responses=True)

    async def close(self):
        """Close Redis connection"""
        if self.redis:
            await self.redis.aclose()
            self.redis = None

    def _key(self, key: str) -> str:
        return f"{self.prefix}{key}"

    async def get(self, key: str) -> Optional[Any]:
        raw = await self.redis.get(self._key(key))
        if raw is None:
            return None
        return json.loads(raw)

    async def set(self, key: str, value: Any, ttl: Optional[int] = None) -> None:
        await self.redis.setex(self._key(key), ttl or self.default_ttl, json.dumps(value))

    async def delete(self, *keys: str) -> None:
        if keys:
            await self.redis.delete(*(self._key(k) for k in keys))
