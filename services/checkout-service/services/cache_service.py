"""Redis-backed cache for users' order lists."""
import json
import logging
from typing import Any, List, Optional

from opentelemetry import trace
from redis.exceptions import RedisError, WatchError

from config import ORDERS_CACHE_TTL_SECONDS
from monitoring import cache_invalidation_failures_counter

logger = logging.getLogger(__name__)


def user_orders_key(user_id: int) -> str:
    return f"orders:user:{user_id}"


def user_orders_generation_key(user_id: int) -> str:
    return f"orders:user:{user_id}:generation"


class OrderCacheInvalidator:
    """
    Read-through cache for order lists plus its invalidation signal.

    Every invalidation bumps a per-user generation counter. A fill only
    lands if the generation it read before loading from the database is
    still current, so a list loaded before a concurrent write is never
    cached after that write's invalidation.

    Every operation is best effort: Redis failures are logged and the caller
    falls back to the database.
    """

    def __init__(self, redis_client: Any, ttl_seconds: int = ORDERS_CACHE_TTL_SECONDS):
        """
        Args:
            redis_client: redis.asyncio client
            ttl_seconds: Lifetime of cached order lists
        """
        self.redis = redis_client
        self.ttl_seconds = ttl_seconds
        self.tracer = trace.get_tracer(__name__)

    async def get_user_orders(self, user_id: int) -> Optional[List[dict]]:
        key = user_orders_key(user_id)
        try:
            cached = await self.redis.get(key)
        except RedisError as e:
            logger.warning("Order cache read failed", extra={"cache_key": key, "error": str(e)})
            return None
        return json.loads(cached) if cached else None

    async def get_generation(self, user_id: int) -> Optional[int]:
        """Current invalidation generation, or None when Redis is unreachable."""
        key = user_orders_generation_key(user_id)
        try:
            value = await self.redis.get(key)
        except RedisError as e:
            logger.warning("Order cache generation read failed", extra={"cache_key": key, "error": str(e)})
            return None
        return int(value or 0)

    async def set_user_orders(self, user_id: int, orders: List[dict], generation: int) -> bool:
        """
        Cache an order list loaded while ``generation`` was current.

        Returns:
            True if the entry was written, False if it was skipped or failed
        """
        key = user_orders_key(user_id)
        generation_key = user_orders_generation_key(user_id)
        with self.tracer.start_as_current_span("cache.set") as cache_span:
            cache_span.set_attribute("cache.system", "redis")
            cache_span.set_attribute("cache.operation", "SET")
            cache_span.set_attribute("cache.key", key)
            try:
                async with self.redis.pipeline(transaction=True) as pipe:
                    await pipe.watch(generation_key)
                    current = await pipe.get(generation_key)
                    if int(current or 0) != generation:
                        cache_span.set_attribute("cache.skipped", True)
                        logger.debug("Order cache fill skipped, list changed while loading",
                                     extra={"user_id": user_id})
                        return False
                    pipe.multi()
                    pipe.set(key, json.dumps(orders), ex=self.ttl_seconds)
                    await pipe.execute()
                    return True
            except WatchError:
                cache_span.set_attribute("cache.skipped", True)
                logger.debug("Order cache fill lost to an invalidation", extra={"user_id": user_id})
                return False
            except RedisError as e:
                logger.warning("Order cache write failed", extra={"cache_key": key, "error": str(e)})
                return False

    async def invalidate_user_orders(self, user_id: int) -> None:
        key = user_orders_key(user_id)
        with self.tracer.start_as_current_span("cache.delete") as cache_span:
            cache_span.set_attribute("cache.system", "redis")
            cache_span.set_attribute("cache.operation", "DELETE")
            cache_span.set_attribute("cache.key", key)
            try:
                # Bump first so an in-flight fill that already loaded cannot land
                await self.redis.incr(user_orders_generation_key(user_id))
                await self.redis.delete(key)
            except RedisError as e:
                cache_invalidation_failures_counter.add(1, {"cache_key_prefix": "orders:user"})
                logger.error("Order cache invalidation failed", extra={
                    "user_id": user_id,
                    "cache_key": key,
                    "error": str(e)
                })
