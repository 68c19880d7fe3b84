"""
TTL cache for metrics queries
"""
import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple

logger = logging.getLogger(__name__)


class MetricsCache:
    """TTL cache with one in-flight refresh per key"""

    def __init__(self, ttl_seconds: int = 300):
        self.cache: Dict[str, Tuple[Any, float]] = {}
        self.ttl_seconds = ttl_seconds
        self.hit_count = 0
        self.miss_count = 0
        self._locks: Dict[str, asyncio.Lock] = {}
        self._lock_users: Dict[str, int] = {}

    @staticmethod
    def make_key(*parts: Any) -> str:
        """Generate cache key from query parts"""
        return "|".join(str(part) for part in parts if part is not None)

    def get(self, key: str) -> Optional[Any]:
        """Get cached result"""
        if key in self.cache:
            data, timestamp = self.cache[key]
            if time.monotonic() - timestamp < self.ttl_seconds:
                self.hit_count += 1
                logger.debug(f"Cache HIT for key: {key[:50]}...")
                return data
            del self.cache[key]

        self.miss_count += 1
        logger.debug(f"Cache MISS for key: {key[:50]}...")
        return None

    def set(self, key: str, data: Any):
        """Set cached result, evicting expired entries"""
        now = time.monotonic()
        expired = [k for k, (_, timestamp) in self.cache.items() if now - timestamp >= self.ttl_seconds]
        for k in expired:
            del self.cache[k]
        self.cache[key] = (data, now)
        logger.debug(f"Cache SET for key: {key[:50]}...")

    async def get_or_fetch(self, key: str, fetch: Callable[[], Awaitable[Any]]) -> Any:
        """Return the cached value or fetch it, collapsing concurrent fetches of the same key"""
        cached = self.get(key)
        if cached is not None:
            return cached

        lock = self._locks.setdefault(key, asyncio.Lock())
        self._lock_users[key] = self._lock_users.get(key, 0) + 1
        try:
            async with lock:
                # Another caller may have filled the entry while we waited
                if key in self.cache:
                    data, timestamp = self.cache[key]
                    if time.monotonic() - timestamp < self.ttl_seconds:
                        return data

                data = await fetch()
                self.set(key, data)
                return data
        finally:
            self._lock_users[key] -= 1
            if not self._lock_users[key]:
                del self._lock_users[key]
                del self._locks[key]

    def clear(self):
        """Clear all cached data"""
        self.cache.clear()
        self.hit_count = 0
        self.miss_count = 0
        logger.info("Cache cleared")

    def get_stats(self) -> Dict[str, Any]:
        """Get cache statistics"""
        total_requests = self.hit_count + self.miss_count
        hit_rate = (self.hit_count / total_requests * 100) if total_requests > 0 else 0

        return {
            "hit_count": self.hit_count,
            "miss_count": self.miss_count,
            "hit_rate_percent": round(hit_rate, 2),
            "cached_queries": len(self.cache),
            "ttl_seconds": self.ttl_seconds,
        }
