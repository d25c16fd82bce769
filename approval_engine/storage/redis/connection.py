"""
Redis connection management.

Redis carries the notification and lifecycle event streams; workflow state
itself never lives here.
"""

import logging
from typing import Optional

import redis.asyncio as redis
from redis.asyncio.connection import ConnectionPool
from redis.exceptions import RedisError

from approval_engine.config import RedisSettings, get_settings

logger = logging.getLogger(__name__)


class RedisConnection:
    """
    Redis connection manager with connection pooling.
    """

    def __init__(self, settings: Optional[RedisSettings] = None):
        self.settings = settings or get_settings().redis
        self._pool: Optional[ConnectionPool] = None
        self._client: Optional[redis.Redis] = None

    async def init(self) -> None:
        """Initialize Redis connection pool and verify connectivity."""
        self._pool = ConnectionPool(
            host=self.settings.host,
            port=self.settings.port,
            db=self.settings.db,
            password=self.settings.password,
            max_connections=self.settings.max_connections,
            socket_timeout=self.settings.socket_timeout,
            socket_connect_timeout=self.settings.socket_connect_timeout,
            decode_responses=True,
        )

        self._client = redis.Redis(connection_pool=self._pool)
        await self._client.ping()
        logger.info(f"Connected to Redis at {self.settings.host}:{self.settings.port}")

    async def close(self) -> None:
        """Close Redis connections."""
        if self._client:
            await self._client.aclose()
            self._client = None

        if self._pool:
            await self._pool.disconnect()
            self._pool = None

    @property
    def client(self) -> redis.Redis:
        """Get Redis client."""
        if self._client is None:
            raise RuntimeError("Redis not initialized. Call init() first.")
        return self._client

    async def health_check(self) -> bool:
        """Check Redis connection health."""
        if self._client is None:
            return False
        try:
            await self._client.ping()
            return True
        except RedisError as e:
            logger.warning(f"Redis health check failed: {e}")
            return False


# Global Redis connection instance
_redis_connection: Optional[RedisConnection] = None


async def get_redis() -> RedisConnection:
    """
    Get the global Redis connection.

    Initializes the connection on first call.
    """
    global _redis_connection

    if _redis_connection is None:
        connection = RedisConnection()
        await connection.init()
        _redis_connection = connection

    return _redis_connection


async def close_redis() -> None:
    """Close the global Redis connection."""
    global _redis_connection

    if _redis_connection is not None:
        await _redis_connection.close()
        _redis_connection = None
