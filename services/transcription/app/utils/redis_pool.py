"""
Redis connection shared by the control subscriber, notifier and transcript store
"""

import time
from typing import Any, Dict, Optional

import redis.asyncio as redis
import structlog

from ..config import Settings, settings as default_settings

logger = structlog.get_logger(__name__)


class RedisPool:
    """Owns one connection pool for the process lifetime"""

    def __init__(self, config: Optional[Settings] = None):
        self.settings = config or default_settings
        self._pool: Optional[redis.ConnectionPool] = None
        self._client: Optional[redis.Redis] = None

    async def initialize(self):
        try:
            self._pool = redis.ConnectionPool.from_url(
                self.settings.redis_url,
                max_connections=self.settings.redis_max_connections,
                retry_on_timeout=True,
                health_check_interval=30,
                decode_responses=True,
            )
            self._client = redis.Redis(connection_pool=self._pool)
            await self._client.ping()
        except redis.RedisError as e:
            logger.error("Failed to connect to Redis", url=self.settings.redis_url, error=str(e))
            raise

        logger.info("Redis pool ready", max_connections=self.settings.redis_max_connections)

    @property
    def client(self) -> redis.Redis:
        if self._client is None:
            raise RuntimeError("Redis pool not initialized")
        return self._client

    async def subscribe(self, *channels: str) -> redis.client.PubSub:
        """Open a pub/sub handle on its own connection"""
        pubsub = self.client.pubsub(ignore_subscribe_messages=True)
        await pubsub.subscribe(*channels)
        return pubsub

    async def close(self):
        if self._client is not None:
            await self._client.aclose()
            self._client = None
        if self._pool is not None:
            await self._pool.disconnect()
            self._pool = None
        logger.info("Redis pool closed")

    async def health_check(self) -> Dict[str, Any]:
        if self._client is None:
            return {"connected": False}
        started = time.perf_counter()
        try:
            await self._client.ping()
        except redis.RedisError as e:
            logger.warning("Redis health check failed", error=str(e))
            return {"connected": False, "error": str(e)}
        return {"connected": True, "latency_ms": round((time.perf_counter() - started) * 1000, 2)}
