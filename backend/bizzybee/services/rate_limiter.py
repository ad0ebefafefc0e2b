"""
Redis fixed-window rate limiter for public endpoints.

Fails open when Redis is unavailable: the webhook must keep accepting
provider notifications even without the limiter.
"""
import logging
import time
from typing import Optional

import redis

from ..config import settings

logger = logging.getLogger(__name__)

_redis_client: Optional[redis.Redis] = None
_redis_unavailable = False  # set after the first failed connect; limiter stays off


def _limiter_client() -> Optional[redis.Redis]:
    global _redis_client, _redis_unavailable
    if _redis_unavailable:
        return None
    if _redis_client is None:
        client = redis.from_url(settings.redis_url, socket_connect_timeout=2, socket_timeout=2)
        try:
            client.ping()
        except redis.RedisError as e:
            logger.warning(f"Rate limiter disabled, Redis unreachable: {e}")
            _redis_unavailable = True
            return None
        _redis_client = client
    return _redis_client


def check_rate_limit(key: str, limit: int, window_s: int = 60) -> bool:
    """True when the call is allowed. One counter per key per window."""
    client = _limiter_client()
    if client is None:
        return True
    counter = f"ratelimit:{key}:{int(time.time() // window_s)}"
    try:
        pipe = client.pipeline()
        pipe.incr(counter)
        pipe.expire(counter, window_s + 1)
        count, _ = pipe.execute()
    except redis.RedisError as e:
        logger.debug(f"Rate limit check failed open for {key}: {e}")
        return True
    return int(count) <= limit
