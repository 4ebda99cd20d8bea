# /leadflow/services/cache_service.py

import json
import logging
from typing import Optional
import redis.asyncio as redis

from leadflow.config.settings import settings
from leadflow.utils.circuit_breaker import CircuitBreaker
from leadflow.utils.metrics import cache_operations

# Central Redis access: small JSON cache helpers plus the shared client used by
# the event queue, the circuit breakers and inbound message de-duplication.

logger = logging.getLogger(__name__)

class CacheService:
    def __init__(self, redis_url: str):
        try:
            self.redis_pool = redis.ConnectionPool.from_url(redis_url, max_connections=20)
            self.redis = redis.Redis(connection_pool=self.redis_pool)
            self.circuit_breaker = CircuitBreaker("redis")
        except Exception as e:
            logger.critical(f"Failed to connect to Redis at {redis_url}: {e}")
            self.redis = None

    async def get(self, key: str) -> Optional[str]:
        if not self.redis: return None
        try:
            result = await self.circuit_breaker.call(self.redis.get, key)
            cache_operations.labels(operation="get", status="hit" if result else "miss").inc()
            return result.decode('utf-8') if result else None
        except Exception as e:
            cache_operations.labels(operation="get", status="error").inc()
            logger.warning(f"Cache get failed for key {key}: {e}")
            return None

    async def set(self, key: str, value: str, ttl: int = 300):
        if not self.redis: return
        try:
            await self.circuit_breaker.call(self.redis.setex, key, ttl, value)
            cache_operations.labels(operation="set", status="success").inc()
        except Exception as e:
            cache_operations.labels(operation="set", status="error").inc()
            logger.warning(f"Cache set failed for key {key}: {e}")

    async def delete(self, key: str):
        if not self.redis: return
        try:
            await self.circuit_breaker.call(self.redis.delete, key)
            cache_operations.labels(operation="delete", status="success").inc()
        except Exception as e:
            cache_operations.labels(operation="delete", status="error").inc()
            logger.warning(f"Cache delete failed for key {key}: {e}")

    async def get_or_set(self, key: str, fetch_func, ttl: int = 300):
        cached_value = await self.get(key)
        if cached_value is not None:
            try: return json.loads(cached_value)
            except json.JSONDecodeError: return cached_value

        fetched_value = await fetch_func()
        if fetched_value is not None:
            await self.set(key, json.dumps(fetched_value, default=str), ttl)
        return fetched_value

    async def claim_once(self, key: str, ttl: int = 300) -> bool:
        """SET NX: True the first time a key is seen within ``ttl`` seconds."""
        if not self.redis: return True
        try:
            claimed = await self.circuit_breaker.call(self.redis.set, key, "1", ex=ttl, nx=True)
            cache_operations.labels(operation="claim", status="new" if claimed else "duplicate").inc()
            return bool(claimed)
        except Exception as e:
            cache_operations.labels(operation="claim", status="error").inc()
            logger.warning(f"Cache claim failed for key {key}: {e}")
            return True

    async def ping(self) -> bool:
        if not self.redis: return False
        await self.redis.ping()
        return True

# Globally accessible instance
cache_service = CacheService(settings.redis_url)
