from typing import Optional
import asyncio
import logging
import uuid
import redis.asyncio as redis
from redis.asyncio import Redis
from redis.exceptions import RedisError

from orca.core.config import settings

logger = logging.getLogger(__name__)


class RedisManager:
    """Redis connection manager"""

    def __init__(self):
        self._redis_client: Optional[Redis] = None

    def connect(self, redis_url: str = None) -> Redis:
        if self._redis_client is None:
            self._redis_client = redis.from_url(
                redis_url or settings.REDIS_URL,
                encoding="utf-8",
                decode_responses=True,
                socket_timeout=5,
                socket_connect_timeout=5,
                health_check_interval=30
            )
        return self._redis_client

    async def disconnect(self) -> None:
        """Close Redis connection"""
        if self._redis_client:
            await self._redis_client.aclose()
            self._redis_client = None
            logger.info("Redis connection closed")

    @property
    def client(self) -> Redis:
        return self.connect()

    async def is_healthy(self) -> bool:
        """Check Redis health"""
        try:
            return bool(await self.client.ping())
        except RedisError as e:
            logger.error(f"Redis health check failed: {e}")
            return False


# Global Redis manager instance
redis_manager = RedisManager()


RELEASE_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
else
    return 0
end
"""


class LockService:
    """Service for distributed locks"""

    def __init__(self, redis_client: Redis):
        self.redis = redis_client

    async def acquire_lock(
        self,
        lock_key: str,
        timeout: int = 30,
        retry_delay: float = 0.1,
        max_retries: int = 1
    ) -> Optional[str]:
        """Acquire distributed lock; returns the lock token or None"""
        lock_value = str(uuid.uuid4())
        lock_key_full = f"lock:{lock_key}"

        for attempt in range(max_retries):
            # SET NX EX is atomic
            if await self.redis.set(lock_key_full, lock_value, ex=timeout, nx=True):
                return lock_value
            if attempt + 1 < max_retries:
                await asyncio.sleep(retry_delay)

        return None

    async def release_lock(self, lock_key: str, lock_value: str) -> bool:
        """Release distributed lock if we still own it"""
        result = await self.redis.eval(RELEASE_SCRIPT, 1, f"lock:{lock_key}", lock_value)
        return result > 0

    async def is_locked(self, lock_key: str) -> bool:
        return await self.redis.exists(f"lock:{lock_key}") > 0


def get_lock_service() -> LockService:
    return LockService(redis_manager.client)
