import logging
from functools import lru_cache

import redis

from judgeboard.core.config import settings

logger = logging.getLogger(__name__)


@lru_cache()
def get_redis() -> redis.Redis:
    """Shared Redis client for tracking keys, leaderboards and pub/sub."""
    client = redis.from_url(
        settings.REDIS_URL,
        socket_connect_timeout=5,
        socket_timeout=5,
        retry_on_timeout=True,
        decode_responses=True,
    )
    logger.info("Redis client configured")
    return client
