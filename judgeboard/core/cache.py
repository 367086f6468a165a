"""Cache-aside helpers for read paths backed by Redis."""

import json
import logging
from typing import Any, Callable

logger = logging.getLogger(__name__)


def get_or_set(redis_client, key: str, ttl_seconds: int, loader: Callable[[], Any]) -> Any:
    """Return the cached JSON value for ``key`` or compute, store and return it.

    Redis failures degrade to calling ``loader`` directly so a cache outage never
    breaks a read.
    """
    try:
        cached = redis_client.get(key)
    except Exception as e:
        logger.warning(f"Cache read failed for {key}: {str(e)}")
        return loader()
    if cached is not None:
        return json.loads(cached)

    value = loader()
    try:
        redis_client.set(key, json.dumps(value, default=str), ex=ttl_seconds)
    except Exception as e:
        logger.warning(f"Cache write failed for {key}: {str(e)}")
    return value


def invalidate_pattern(redis_client, pattern: str) -> int:
    removed = 0
    try:
        keys = list(redis_client.scan_iter(match=pattern, count=500))
        if keys:
            removed = redis_client.delete(*keys)
    except Exception as e:
        logger.warning(f"Cache invalidation failed for {pattern}: {str(e)}")
    return removed
