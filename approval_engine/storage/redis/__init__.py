"""Redis connection for notification and event streams."""

from approval_engine.storage.redis.connection import RedisConnection, close_redis, get_redis

__all__ = ["RedisConnection", "get_redis", "close_redis"]
