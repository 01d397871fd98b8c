from typing import Optional

import redis
from .config import settings

def get_redis_client() -> Optional[redis.Redis]:
    """
    Returns a Redis client instance configured from application settings,
    or None when no Redis host is configured.
    """
    if not settings.REDIS_HOST:
        return None
    return redis.Redis(
        host=settings.REDIS_HOST,
        port=settings.REDIS_PORT,
        db=settings.REDIS_DB,
        decode_responses=True
    )
