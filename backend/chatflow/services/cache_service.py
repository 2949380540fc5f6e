# /chatflow/services/cache_service.py

import json
import logging
from typing import Optional
import redis.asyncio as redis

from chatflow.config.settings import settings
from chatflow.utils.circuit_breaker import CircuitBreaker
from chatflow.utils.metrics import cache_operations_counter

# Redis access for the inbound event queue and short-lived de-duplication
# keys. Cache failures degrade to "not cached"; they never fail a request.

logger = logging.getLogger(__name__)


class CacheService:
    def __init__(self, redis_url: str):
        try:
            self.redis_pool = redis.ConnectionPool.from_url(redis_url, max_connections=20)
            self.redis = redis.Redis(connection_pool=self.redis_pool)
            self.circuit_breaker = CircuitBreaker("cache")
        except Exception as e:
            logger.critical(f"Failed to connect to Redis at {redis_url}: {e}")
            self.redis = None  # Ensure redis is None if connection fails

    async def get(self, key: str) -> Optional[str]:
        if not self.redis: return None
        try:
            result = await self.circuit_breaker.call(self.redis.get, key)
            cache_operations_counter.labels(operation="get", status="hit" if result else "miss").inc()
            return result.decode('utf-8') if result else None
        except Exception as e:
            cache_operations_counter.labels(operation="get", status="error").inc()
            logger.warning(f"Cache get failed for key {key}: {e}")
            return None

    async def set(self, key: str, value: str, ttl: int = 300):
        if not self.redis: return
        try:
            await self.circuit_breaker.call(self.redis.setex, key, ttl, value)
            cache_operations_counter.labels(operation="set", status="success").inc()
        except Exception as e:
            cache_operations_counter.labels(operation="set", status="error").inc()
            logger.warning(f"Cache set failed for key {key}: {e}")

    async def set_if_absent(self, key: str, ttl: int = 300) -> Optional[bool]:
        """True when the key was created now, False when it already existed, None when Redis is unavailable."""
        if not self.redis: return None
        try:
            created = await self.circuit_breaker.call(self.redis.set, key, "1", ex=ttl, nx=True)
            cache_operations_counter.labels(operation="set_nx", status="created" if created else "exists").inc()
            return bool(created)
        except Exception as e:
            cache_operations_counter.labels(operation="set_nx", status="error").inc()
            logger.warning(f"Cache set_if_absent failed for key {key}: {e}")
            return None

    async def get_json(self, key: str):
        cached_value = await self.get(key)
        if cached_value is None:
            return None
        try: return json.loads(cached_value)
        except json.JSONDecodeError: return cached_value

    async def close(self):
        if self.redis:
            await self.redis.aclose()


# Globally accessible instance
cache_service = CacheService(settings.redis_url)
