"""
Redis Caching Layer

Key/value helpers shared by the rate limiter and the durable tier of the
client read-through cache. Degrades gracefully if Redis is unavailable.
"""
import json
import logging
import time
from typing import Optional, Any
import redis
from redis.exceptions import ConnectionError, TimeoutError, RedisError
from core.config import settings

logger = logging.getLogger(__name__)

# Redis connection pool (singleton)
_redis_client: Optional[redis.Redis] = None

# Monotonic time of the last failed connect; no reconnect is tried inside the backoff.
_last_failure: Optional[float] = None
RECONNECT_BACKOFF_S = 30.0


def get_redis_client() -> Optional[redis.Redis]:
    """Get Redis client with connection pooling. Returns None if Redis unavailable."""
    global _redis_client, _last_failure

    if _redis_client is not None:
        return _redis_client

    if _last_failure is not None and time.monotonic() - _last_failure < RECONNECT_BACKOFF_S:
        return None

    try:
        client = redis.from_url(
            settings.REDIS_URL,
            decode_responses=True,
            socket_connect_timeout=2,
            socket_timeout=2,
            retry_on_timeout=True,
            health_check_interval=30
        )
        client.ping()
        _redis_client = client
        _last_failure = None
        logger.info("Redis connection established")
        return _redis_client
    except (ConnectionError, TimeoutError, RedisError) as e:
        logger.warning(f"Redis unavailable: {e}. Caching disabled for {RECONNECT_BACKOFF_S:.0f}s.")
        _redis_client = None
        _last_failure = time.monotonic()
        return None


def get_cache(key: str) -> Optional[Any]:
    """Get value from cache. Returns None if not found or Redis unavailable."""
    client = get_redis_client()
    if not client:
        return None

    try:
        value = client.get(key)
        if value:
            return json.loads(value)
        return None
    except (ConnectionError, TimeoutError, RedisError) as e:
        logger.warning(f"Cache get error for key {key}: {e}")
        return None
    except ValueError as e:
        logger.warning(f"Cache value for key {key} is not valid JSON: {e}")
        return None


def set_cache(key: str, value: Any, ttl: int = None) -> bool:
    """Set value in cache. Returns True if successful, False otherwise."""
    client = get_redis_client()
    if not client:
        return False

    try:
        if ttl is None:
            ttl = settings.CACHE_TTL_DEFAULT

        client.setex(
            key,
            ttl,
            json.dumps(value, default=str)  # default=str handles datetime, UUID, etc.
        )
        return True
    except (ConnectionError, TimeoutError, RedisError) as e:
        logger.warning(f"Cache set error for key {key}: {e}")
        return False
