"""
Redis connection management for status caching and worker wake-up notifications.
"""

import json
import logging
import platform
from typing import Optional, Any, Dict, AsyncIterator
import redis.asyncio as redis
from redis.exceptions import RedisError

from scheduled_messaging.core.config import settings

logger = logging.getLogger(__name__)


class RedisManager:
    """Manages Redis connections and operations."""

    def __init__(self):
        """Initialize Redis manager."""
        self.redis_client: Optional[redis.Redis] = None

    async def init_redis(self):
        """Initialize Redis connection pool."""
        try:
            redis_params = {
                "host": settings.redis_host,
                "port": settings.redis_port,
                "password": settings.redis_password if settings.redis_password else None,
                "db": settings.redis_db,
                "decode_responses": True,
                "max_connections": settings.redis_pool_size,
                "socket_connect_timeout": settings.redis_pool_timeout,
                "socket_keepalive": True,
            }

            # Keepalive options are not compatible with macOS
            if platform.system() == "Linux":
                redis_params["socket_keepalive_options"] = {
                    1: 1,  # TCP_KEEPIDLE
                    2: 1,  # TCP_KEEPINTVL
                    3: 3,  # TCP_KEEPCNT
                }

            self.redis_client = redis.Redis(**redis_params)

            await self.redis_client.ping()
            logger.info("Redis connection initialized successfully")

        except RedisError as e:
            logger.error(f"Failed to initialize Redis: {e}")
            raise

    async def close(self):
        """Close Redis connections."""
        if self.redis_client:
            await self.redis_client.aclose()
            logger.info("Redis connections closed")

    # Cache Operations
    async def get(self, key: str) -> Optional[Any]:
        """
        Get value from cache.

        Args:
            key: Cache key

        Returns:
            Cached value or None
        """
        try:
            value = await self.redis_client.get(key)
            if value:
                return json.loads(value)
            return None
        except (RedisError, json.JSONDecodeError) as e:
            logger.error(f"Error getting cache key {key}: {e}")
            return None

    async def set(
        self,
        key: str,
        value: Any,
        ttl: Optional[int] = None
    ) -> bool:
        """
        Set cache value.

        Args:
            key: Cache key
            value: JSON-serializable value
            ttl: Time to live in seconds

        Returns:
            True if successful
        """
        try:
            serialized = json.dumps(value)
            if ttl:
                await self.redis_client.setex(key, ttl, serialized)
            else:
                await self.redis_client.set(key, serialized)
            return True
        except (RedisError, TypeError, ValueError) as e:
            logger.error(f"Error setting cache key {key}: {e}")
            return False

    async def delete(self, key: str) -> bool:
        """Delete cache entry."""
        try:
            result = await self.redis_client.delete(key)
            return result > 0
        except RedisError as e:
            logger.error(f"Error deleting cache key {key}: {e}")
            return False

    # Pub/Sub Operations
    async def publish(
        self,
        channel: str,
        message: Dict[str, Any]
    ) -> int:
        """
        Publish message to channel.

        Returns:
            Number of subscribers that received the message
        """
        try:
            serialized = json.dumps(message)
            return await self.redis_client.publish(channel, serialized)
        except (RedisError, TypeError, ValueError) as e:
            logger.error(f"Error publishing to channel {channel}: {e}")
            return 0

    async def listen(self, channel: str) -> AsyncIterator[Dict[str, Any]]:
        """
        Subscribe to a channel and yield decoded messages until cancelled.

        Each listener gets its own PubSub connection so that several loops can
        subscribe independently.
        """
        pubsub = self.redis_client.pubsub(ignore_subscribe_messages=True)
        await pubsub.subscribe(channel)
        logger.info(f"Subscribed to channel: {channel}")
        try:
            async for message in pubsub.listen():
                if message.get("type") != "message":
                    continue
                try:
                    yield json.loads(message["data"])
                except (TypeError, json.JSONDecodeError):
                    logger.warning(f"Discarding malformed notification on {channel}")
        finally:
            await pubsub.unsubscribe(channel)
            await pubsub.aclose()

    # Health Check
    async def health_check(self) -> bool:
        """
        Check Redis health.

        Returns:
            True if Redis is healthy
        """
        try:
            await self.redis_client.ping()
            return True
        except (RedisError, AttributeError) as e:
            logger.error(f"Redis health check failed: {e}")
            return False


# Global Redis manager instance
redis_manager = RedisManager()


async def init_redis():
    """Initialize Redis on application startup."""
    await redis_manager.init_redis()


async def close_redis():
    """Close Redis connections on application shutdown."""
    await redis_manager.close()
