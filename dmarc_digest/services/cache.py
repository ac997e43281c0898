"""
Redis caching service for rollups

Caching strategy:
- Rollups per scope and date range: default TTL from settings
- Invalidated whenever rows are committed, rotated or purged
"""
import redis
import json
import logging
from typing import Optional, Any

from dmarc_digest.config import get_settings
from dmarc_digest.metrics import record_cache_hit, record_cache_miss

logger = logging.getLogger(__name__)


class CacheService:
    """Redis caching service with graceful degradation"""

    def __init__(self, redis_url: Optional[str] = None, enabled: Optional[bool] = None):
        settings = get_settings()
        redis_url = redis_url or settings.redis_url
        enabled = settings.cache_enabled if enabled is None else enabled

        self.client = None
        self.enabled = False

        if not enabled:
            logger.info("Rollup cache disabled by configuration")
            return

        try:
            self.client = redis.from_url(
                redis_url,
                decode_responses=True,
                socket_connect_timeout=5,
                socket_timeout=5
            )
            self.client.ping()
            self.enabled = True
            logger.info(f"Redis cache connected: {redis_url}")
        except Exception as e:
            logger.warning(f"Redis unavailable, caching disabled: {e}")
            self.client = None
            self.enabled = False

    def get(self, key: str) -> Optional[Any]:
        """Get value from cache"""
        if not self.enabled:
            return None
        try:
            value = self.client.get(key)
        except Exception as e:
            logger.error(f"Cache get error for key {key}: {e}")
            return None

        if value:
            record_cache_hit("rollup")
            return json.loads(value)
        record_cache_miss("rollup")
        return None

    def set(self, key: str, value: Any, ttl: int = 300) -> bool:
        """Set value in cache with TTL in seconds"""
        if not self.enabled:
            return False
        try:
            return bool(self.client.setex(key, ttl, json.dumps(value, default=str)))
        except Exception as e:
            logger.error(f"Cache set error for key {key}: {e}")
            return False

    def invalidate_pattern(self, pattern: str):
        """Invalidate all keys matching pattern"""
        if not self.enabled:
            return
        try:
            for key in self.client.scan_iter(match=pattern):
                self.client.delete(key)
            logger.info(f"Invalidated cache pattern: {pattern}")
        except Exception as e:
            logger.error(f"Cache invalidate pattern error for {pattern}: {e}")


def cache_key(*args, **kwargs) -> str:
    """Generate cache key from arguments"""
    parts = [str(arg) for arg in args]
    parts.extend([f"{k}={v}" for k, v in sorted(kwargs.items()) if v is not None])
    return ":".join(parts)
