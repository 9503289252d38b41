import redis
import logging
from greenpay.config import Config

logger = logging.getLogger(__name__)

# Shared pool for the account locks; connections are opened lazily
pool = redis.ConnectionPool(
    host=Config.REDIS_HOST,
    port=Config.REDIS_PORT,
    db=Config.REDIS_DB,
    password=Config.REDIS_PASSWORD,
    decode_responses=True,
    socket_timeout=5,
    socket_connect_timeout=5,
    retry_on_timeout=True
)


def get_redis():
    """Client on the shared pool, checked with a ping before use."""
    try:
        client = redis.Redis(connection_pool=pool)
        client.ping()
        return client
    except redis.ConnectionError as e:
        logger.error(f"CRITICAL: Cannot connect to Redis at {Config.REDIS_HOST}:{Config.REDIS_PORT}: {e}")
        raise
