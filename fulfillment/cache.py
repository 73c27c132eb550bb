"""
Redis caching utilities for the Fulfillment service.

Caches dashboard aggregates for a short TTL. Caching is off unless
DASHBOARD_CACHE_TTL is positive; every function is then a no-op so the
dashboard always recomputes from the database.
"""
import json
import logging
from typing import Optional, Any
import redis

from .config import REDIS_URL, DASHBOARD_CACHE_TTL

logger = logging.getLogger(__name__)

DASHBOARD_PREFIX = "dashboard"

# Initialize Redis client (connects lazily on first command)
redis_client = redis.from_url(REDIS_URL, decode_responses=True) if DASHBOARD_CACHE_TTL > 0 else None


def get_cache(key: str) -> Optional[Any]:
    """
    Get a value from Redis cache.

    Args:
        key: Cache key

    Returns:
        Cached value or None if not found
    """
    if redis_client is None:
        return None
    try:
        value = redis_client.get(key)
        if value:
            return json.loads(value)
        return None
    except redis.RedisError as e:
        logger.warning(f"Cache get error: {e}")
        return None


def set_cache(key: str, value: Any, ttl: int = DASHBOARD_CACHE_TTL) -> bool:
    """
    Set a value in Redis cache with TTL.

    Args:
        key: Cache key
        value: Value to cache (will be JSON serialized)
        ttl: Time to live in seconds

    Returns:
        True if successful, False otherwise
    """
    if redis_client is None:
        return False
    try:
        redis_client.setex(key, ttl, json.dumps(value))
        return True
    except redis.RedisError as e:
        logger.warning(f"Cache set error: {e}")
        return False


def delete_pattern(pattern: str) -> bool:
    """
    Delete all keys matching a pattern.

    Args:
        pattern: Pattern to match (e.g., "dashboard:*")

    Returns:
        True if successful, False otherwise
    """
    if redis_client is None:
        return False
    try:
        keys = redis_client.keys(pattern)
        if keys:
            redis_client.delete(*keys)
        return True
    except redis.RedisError as e:
        logger.warning(f"Cache delete pattern error: {e}")
        return False


def invalidate_dashboard() -> None:
    """Drop every cached dashboard aggregate after a state change."""
    delete_pattern(f"{DASHBOARD_PREFIX}:*")
