"""
Redis configuration and connection management
"""

import redis.asyncio as redis
from typing import Optional
import logging

from boxoffice.config import settings

logger = logging.getLogger(__name__)

# Process-wide Redis client, opened by the process owner
redis_client: Optional[redis.Redis] = None


async def init_redis(url: Optional[str] = None) -> redis.Redis:
    """
    Initialize Redis connection
    """
    global redis_client
    try:
        redis_client = redis.from_url(
            url or settings.REDIS_URL,
            max_connections=settings.REDIS_MAX_CONNECTIONS,
            decode_responses=True
        )
        # Test connection
        await redis_client.ping()
        logger.info("Redis connection established")
        return redis_client
    except Exception as e:
        logger.error(f"Failed to connect to Redis: {e}")
        raise


async def close_redis():
    """
    Close Redis connection
    """
    global redis_client
    if redis_client:
        await redis_client.aclose()
        redis_client = None
        logger.info("Redis connection closed")

