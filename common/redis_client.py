"""
Redis connection used as the settlement queue's backing store
"""
import logging
import redis
from .settings import settings

logger = logging.getLogger(__name__)

def create_redis(url: str = None) -> redis.Redis:
    """Build a client; the queue relies on str responses"""
    return redis.Redis.from_url(url or settings.redis_url, decode_responses=True)

def ping(client: redis.Redis) -> bool:
    """Check Redis connectivity"""
    try:
        return bool(client.ping())
    except redis.RedisError as e:
        logger.warning(f"Redis ping failed: {e}")
        return False
