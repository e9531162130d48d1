import redis
from blockreceipt.core.config import config
from blockreceipt.core.log_utils import get_logger

logger = get_logger("redis")


class RedisClient:
    _pool = None

    @classmethod
    def get_client(cls):
        if cls._pool is None:
            redis_url = config.get("REDIS_URL", "redis://localhost:6379/0")
            try:
                cls._pool = redis.ConnectionPool.from_url(
                    redis_url,
                    decode_responses=True,
                    socket_connect_timeout=3,
                    socket_timeout=3
                )
                logger.info(f"Redis pool initialized: {redis_url}")
            except Exception as e:
                logger.error(f"Failed to initialize Redis pool: {e}")
                raise
        return redis.Redis(connection_pool=cls._pool)

    @classmethod
    def reset(cls):
        if cls._pool is not None:
            cls._pool.disconnect()
        cls._pool = None


redis_client = RedisClient
