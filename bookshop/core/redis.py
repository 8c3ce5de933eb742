from redis.exceptions import RedisError, ConnectionError, TimeoutError
import redis.asyncio as redis

from bookshop.core.logging import get_logger
from bookshop.core.metrics import background_task_errors_total

logger = get_logger(__name__)


class RedisClient:
    """Async Redis client wrapper with proper error handling"""

    def __init__(self, url: str):
        self.url = url
        self.client: redis.Redis | None = None

    async def connect(self):
        """
        Connect to Redis

        Raises:
            ConnectionError: If unable to connect to Redis
        """
        try:
            self.client = redis.from_url(
                self.url,
                encoding="utf-8",
                decode_responses=True,
                socket_connect_timeout=5,
                socket_keepalive=True,
                health_check_interval=30,
            )
            await self.client.ping()
            logger.info("redis_connected")
        except Exception as e:
            logger.error("redis_connect_failed", error_message=str(e))
            raise

    async def disconnect(self):
        if self.client:
            await self.client.aclose()
            self.client = None
            logger.info("redis_disconnected")

    async def ping(self) -> bool:
        """
        Check if Redis is alive

        Returns:
            True if Redis is responsive, False otherwise
        """
        if not self.client:
            return False
        try:
            await self.client.ping()
            return True
        except RedisError:
            return False

    async def exists(self, key: str) -> bool:
        """
        Check if key exists in Redis

        Raises:
            RuntimeError: If Redis client not connected
            RedisError: On Redis operation failures
        """
        if not self.client:
            raise RuntimeError("Redis client not connected")

        try:
            return bool(await self.client.exists(key))
        except (ConnectionError, TimeoutError) as e:
            logger.error("redis_command_failed", command="exists", key=key, error_message=str(e))
            raise

    async def set(self, key: str, value: str, ttl: int | None = None) -> bool:
        """
        Set value in Redis with optional TTL

        Raises:
            RuntimeError: If Redis client not connected
            RedisError: On Redis operation failures
        """
        if not self.client:
            raise RuntimeError("Redis client not connected")

        try:
            if ttl:
                await self.client.setex(key, ttl, value)
            else:
                await self.client.set(key, value)
            return True
        except (ConnectionError, TimeoutError) as e:
            logger.error("redis_command_failed", command="set", key=key, error_message=str(e))
            raise


class ProcessedMessageCache:
    """
    Fast-path marker for messages whose side effects are already committed.

    The database uniqueness constraints remain the authority; this only saves
    a transaction on an obvious redelivery. Redis trouble is therefore logged
    and treated as a cache miss, never as a message failure.
    """

    def __init__(self, redis_client: RedisClient, ttl: int):
        self.redis = redis_client
        self.ttl = ttl

    @staticmethod
    def _key(queue: str, dedup_key: str) -> str:
        return f"processed:{queue}:{dedup_key}"

    async def seen(self, queue: str, dedup_key: str) -> bool:
        try:
            return await self.redis.exists(self._key(queue, dedup_key))
        except (RedisError, RuntimeError) as e:
            background_task_errors_total.labels(
                task_name="processed-message-cache", error_type=type(e).__name__
            ).inc()
            logger.warning(
                "processed_cache_unavailable",
                queue=queue,
                dedup_key=dedup_key,
                error_message=str(e),
            )
            return False

    async def mark(self, queue: str, dedup_key: str) -> None:
        try:
            await self.redis.set(self._key(queue, dedup_key), "1", ttl=self.ttl)
        except (RedisError, RuntimeError) as e:
            logger.warning(
                "processed_cache_mark_failed",
                queue=queue,
                dedup_key=dedup_key,
                error_message=str(e),
            )
