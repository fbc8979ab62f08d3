"""
Redis helpers

Shared client plus a small lock primitive used to keep bulk commit runs
single-flight per user. Degrades gracefully: if Redis is unavailable the
lock fails open and the caller proceeds.
"""
import json
import logging
import uuid
from typing import Any, Optional
import redis
from redis.exceptions import ConnectionError, TimeoutError, RedisError
from core.config import settings

logger = logging.getLogger(__name__)

# Redis connection pool (singleton)
_redis_client: Optional[redis.Redis] = None

# Sentinel returned when the lock could not be checked (Redis down)
LOCK_UNAVAILABLE = "unavailable"


def get_redis_client() -> Optional[redis.Redis]:
    """Get Redis client with connection pooling. Returns None if Redis unavailable."""
    global _redis_client

    if _redis_client is not None:
        return _redis_client

    try:
        _redis_client = redis.from_url(
            settings.REDIS_URL,
            decode_responses=True,
            socket_connect_timeout=2,
            socket_timeout=2,
            retry_on_timeout=True,
            health_check_interval=30
        )
        _redis_client.ping()
        logger.info("Redis connection established")
        return _redis_client
    except (ConnectionError, TimeoutError, RedisError) as e:
        logger.warning(f"Redis unavailable: {e}. Locks disabled.")
        _redis_client = None
        return None


def lock_key(*parts) -> str:
    return ":".join(["lock"] + [str(p) for p in parts if p is not None])


def acquire_lock(key: str, ttl_s: Optional[int] = None) -> Optional[str]:
    """
    Try to take `key` for `ttl_s` seconds.

    Returns a token on success, LOCK_UNAVAILABLE when Redis cannot be
    reached (fail-open), or None when someone else holds the lock.
    """
    client = get_redis_client()
    if not client:
        return LOCK_UNAVAILABLE

    token = uuid.uuid4().hex
    try:
        if client.set(key, token, nx=True, ex=ttl_s or settings.BULK_JOB_LOCK_TTL_S):
            return token
        return None
    except (ConnectionError, TimeoutError, RedisError) as e:
        logger.warning(f"Lock acquire error for key {key}: {e}")
        return LOCK_UNAVAILABLE


def release_lock(key: str, token: Optional[str]) -> bool:
    """Release `key` if we still own it."""
    if not token or token == LOCK_UNAVAILABLE:
        return False

    client = get_redis_client()
    if not client:
        return False

    try:
        if client.get(key) == token:
            client.delete(key)
            return True
        return False
    except (ConnectionError, TimeoutError, RedisError) as e:
        logger.warning(f"Lock release error for key {key}: {e}")
        return False


def get_cache(key: str) -> Optional[Any]:
    """Get a JSON value. Returns None if not found or Redis unavailable."""
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


def set_cache(key: str, value: Any, ttl: int) -> bool:
    """Store a JSON value for `ttl` seconds. Returns True if successful."""
    client = get_redis_client()
    if not client:
        return False

    try:
        client.setex(key, ttl, json.dumps(value, default=str))
        return True
    except (ConnectionError, TimeoutError, RedisError) as e:
        logger.warning(f"Cache set error for key {key}: {e}")
        return False
