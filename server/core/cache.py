"""Cache service with Redis (production) or in-memory (development) backend.

Follows the n8n pattern where a single process needs no external store,
with Redis used when executions must survive a process restart.
"""

import json
from typing import Any, Dict, Optional, Set

import redis.asyncio as redis

from core.config import Settings
from core.logging import get_logger, log_cache_operation

logger = get_logger(__name__)


class CacheService:
    """Async cache service with Redis or memory backend.

    Backend selection:
    - Redis: When REDIS_ENABLED=true and the server answers PING
    - Memory: When Redis is disabled or unreachable
    """

    def __init__(self, settings: Settings, redis_client: Optional[redis.Redis] = None):
        self.settings = settings
        self.redis: Optional[redis.Redis] = redis_client
        self.memory_cache: Dict[str, Any] = {}
        self.memory_sets: Dict[str, Set[str]] = {}
        self.use_redis = settings.redis_enabled or redis_client is not None

    async def startup(self):
        """Initialize cache connection."""
        if not self.use_redis:
            logger.info("Using in-memory cache", redis_enabled=self.settings.redis_enabled)
            return

        try:
            if self.redis is None:
                if not self.settings.redis_url:
                    raise ValueError("REDIS_URL is required when REDIS_ENABLED is set")
                self.redis = redis.from_url(
                    self.settings.redis_url,
                    encoding="utf-8",
                    decode_responses=True,
                    socket_timeout=5,
                    socket_connect_timeout=5,
                    retry_on_timeout=True
                )

            await self.redis.ping()
            logger.info("Redis cache initialized", url=self.settings.redis_url)

        except Exception as e:
            logger.warning("Redis connection failed, falling back to memory", error=str(e))
            self.use_redis = False
            self.redis = None

    async def shutdown(self):
        """Close cache connections."""
        if self.redis:
            await self.redis.aclose()
            logger.info("Redis cache connections closed")

        self.memory_cache.clear()
        self.memory_sets.clear()

    def is_redis_available(self) -> bool:
        """Check whether the Redis backend is active."""
        return self.use_redis and self.redis is not None

    async def get(self, key: str) -> Optional[Any]:
        """Get value from cache."""
        try:
            if self.is_redis_available():
                value = await self.redis.get(key)
                log_cache_operation(logger, "get", key, hit=value is not None)
                return json.loads(value) if value else None

            value = self.memory_cache.get(key)
            log_cache_operation(logger, "get", key, hit=value is not None)
            return value

        except Exception as e:
            logger.error("Cache get failed", key=key, error=str(e))
            return None

    async def set(self, key: str, value: Any, ttl: Optional[int] = None) -> bool:
        """Set value in cache with optional TTL."""
        try:
            ttl = ttl or self.settings.cache_ttl

            if self.is_redis_available():
                serialized = json.dumps(value, default=str)
                await self.redis.setex(key, ttl, serialized)
            else:
                # Memory backend keeps values until deleted
                self.memory_cache[key] = value
            log_cache_operation(logger, "set", key, ttl=ttl)
            return True

        except Exception as e:
            logger.error("Cache set failed", key=key, error=str(e))
            return False

    async def delete(self, key: str) -> bool:
        """Delete value from cache."""
        try:
            if self.is_redis_available():
                deleted = bool(await self.redis.delete(key))
            else:
                deleted = self.memory_cache.pop(key, None) is not None
            log_cache_operation(logger, "delete", key, deleted=deleted)
            return deleted

        except Exception as e:
            logger.error("Cache delete failed", key=key, error=str(e))
            return False

    async def exists(self, key: str) -> bool:
        """Check if key exists in cache."""
        try:
            if self.is_redis_available():
                return bool(await self.redis.exists(key))
            return key in self.memory_cache
        except Exception as e:
            logger.error("Cache exists check failed", key=key, error=str(e))
            return False

    async def expire(self, key: str, ttl: int) -> bool:
        """Set TTL on an existing key (no-op for the memory backend)."""
        try:
            if self.is_redis_available():
                return bool(await self.redis.expire(key, ttl))
            return key in self.memory_cache
        except Exception as e:
            logger.error("Cache expire failed", key=key, error=str(e))
            return False

    # =========================================================================
    # SET OPERATIONS (active execution index)
    # =========================================================================

    async def set_add(self, key: str, *members: str) -> bool:
        """Add members to a set."""
        try:
            if self.is_redis_available():
                await self.redis.sadd(key, *members)
            else:
                self.memory_sets.setdefault(key, set()).update(members)
            return True
        except Exception as e:
            logger.error("Cache set add failed", key=key, error=str(e))
            return False

    async def set_remove(self, key: str, *members: str) -> bool:
        """Remove members from a set."""
        try:
            if self.is_redis_available():
                await self.redis.srem(key, *members)
            else:
                self.memory_sets.get(key, set()).difference_update(members)
            return True
        except Exception as e:
            logger.error("Cache set remove failed", key=key, error=str(e))
            return False

    async def set_members(self, key: str) -> Set[str]:
        """Get all members of a set."""
        try:
            if self.is_redis_available():
                members = await self.redis.smembers(key)
                return {m.decode("utf-8") if isinstance(m, bytes) else m for m in members}
            return set(self.memory_sets.get(key, set()))
        except Exception as e:
            logger.error("Cache set members failed", key=key, error=str(e))
            return set()
