"""
Simple in-memory cache shared by the trading services

Holds the latest market observation per symbol, the current risk snapshot,
cached positions and simulated execution records. Also provides named
locks for operations that must not interleave across services.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from typing import Any, AsyncIterator, Dict, Optional

logger = logging.getLogger(__name__)


class CacheEntry:
    """Single cache entry with TTL"""

    def __init__(self, value: Any, ttl_seconds: Optional[float]):
        self.value = value
        self.expires_at = (
            datetime.utcnow() + timedelta(seconds=ttl_seconds) if ttl_seconds is not None else None
        )

    def is_expired(self) -> bool:
        return self.expires_at is not None and datetime.utcnow() >= self.expires_at

    def remaining_seconds(self) -> Optional[float]:
        if self.expires_at is None:
            return None
        return max(0.0, (self.expires_at - datetime.utcnow()).total_seconds())


class SimpleCache:
    """
    Simple in-memory cache with TTL support

    Safe for asyncio use. Expired entries are dropped on read and by
    cleanup_expired().
    """

    def __init__(self):
        self._cache: Dict[str, CacheEntry] = {}
        self._lock = asyncio.Lock()
        # Named locks handed out by lock()
        self._named_locks: Dict[str, asyncio.Lock] = {}

    async def get(self, key: str) -> Optional[Any]:
        """Get value from cache if not expired"""
        async with self._lock:
            entry = self._cache.get(key)
            if entry is None:
                return None

            if entry.is_expired():
                del self._cache[key]
                return None

            return entry.value

    async def set(self, key: str, value: Any, ttl_seconds: Optional[float] = None):
        """Set value in cache with TTL (None = no expiry)"""
        async with self._lock:
            self._cache[key] = CacheEntry(value, ttl_seconds)

    async def ttl(self, key: str) -> Optional[float]:
        """Seconds until the key expires, or None if missing or without expiry"""
        async with self._lock:
            entry = self._cache.get(key)
            if entry is None or entry.is_expired():
                return None
            return entry.remaining_seconds()

    async def delete(self, key: str):
        """Delete a cache entry"""
        async with self._lock:
            self._cache.pop(key, None)

    async def clear(self):
        """Clear all cache entries"""
        async with self._lock:
            self._cache.clear()

    async def delete_prefix(self, prefix: str):
        """Delete all cache entries whose keys start with the given prefix"""
        async with self._lock:
            keys_to_delete = [key for key in self._cache if key.startswith(prefix)]
            for key in keys_to_delete:
                del self._cache[key]

    async def cleanup_expired(self) -> int:
        """Remove all expired entries. Returns how many were removed."""
        async with self._lock:
            expired_keys = [key for key, entry in self._cache.items() if entry.is_expired()]
            for key in expired_keys:
                del self._cache[key]
            return len(expired_keys)

    @asynccontextmanager
    async def lock(self, name: str, timeout: float = 10.0) -> AsyncIterator[None]:
        """
        Hold a named lock for the duration of the block.

        Raises asyncio.TimeoutError if the lock is not acquired within timeout.

        Usage:
            async with cache.lock("close:BTCUSDT"):
                ...
        """
        named = self._named_locks.setdefault(name, asyncio.Lock())
        await asyncio.wait_for(named.acquire(), timeout=timeout)
        try:
            yield
        finally:
            named.release()


# Global cache instance
trading_cache = SimpleCache()
