import os
from typing import Optional

try:
    import redis
except ImportError:
    redis = None

from leetstack.utils.logger import get_logger

LOG = get_logger()

REDIS_URL = os.getenv('REDIS_URL', None)


def connect_redis(purpose: str) -> Optional['redis.Redis']:
    """Return a pinged Redis client, or None when Redis is unreachable.

    Stores call this once at construction time and keep their in-memory
    backend when it returns None.
    """
    if redis is None:
        LOG.warning('redis library not available, using in-memory store', extra={'purpose': purpose})
        return None
    try:
        if REDIS_URL:
            client = redis.from_url(REDIS_URL, decode_responses=True)
        else:
            client = redis.Redis(
                host=os.getenv('REDIS_HOST', 'redis'),
                port=int(os.getenv('REDIS_PORT', '6379')),
                password=os.getenv('REDIS_PASSWORD') or None,
                decode_responses=True,
            )
        client.ping()
        LOG.info('redis_connected', extra={'purpose': purpose})
        return client
    except Exception as e:
        LOG.warning('Redis not available, using in-memory store', extra={'purpose': purpose, 'error': str(e)})
        return None


def backend_for(env_var: str) -> str:
    return os.getenv(env_var, 'memory').strip().lower()
