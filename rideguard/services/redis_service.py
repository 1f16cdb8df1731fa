# rideguard/services/redis_service.py
"""
Redis Service for RideGuard.

Async-only wrapper around redis.asyncio used by the Redis-backed session
and activity stores:
- JSON serialization for record values
- TTL support
- Set and sorted-set helpers for secondary indexes
- Distributed locks
- Health checks

Unlike a cache, the stores need to know when Redis fails, so every
operation raises RedisServiceError instead of returning a default.
"""
import os
import json
import redis.asyncio as redis
from typing import Optional, Dict, Any, List, Set, Union
from dataclasses import dataclass
import logging

from rideguard.core.service_base import BaseService, ServiceConfig
from rideguard.core.exceptions import RedisServiceError

logger = logging.getLogger(__name__)

Score = Union[int, float, str]


@dataclass
class RedisConfig(ServiceConfig):
    """Configuration for Redis Service"""
    url: Optional[str] = None
    decode_responses: bool = True
    socket_timeout: float = 5.0
    max_connections: int = 20
    retry_on_timeout: bool = True
    health_check_interval: int = 30
    key_prefix: str = "rideguard"


class RedisService(BaseService[RedisConfig]):
    """Async Redis service backing the session and activity stores."""

    def __init__(self, config: Optional[RedisConfig] = None):
        """
        Initialize Redis Service.

        Args:
            config: Redis configuration. If not provided, uses environment variables.
        """
        self.logger = logging.getLogger(__name__)
        self._url_source = None
        self._scripts: Dict[str, Any] = {}

        if config is None:
            config = RedisConfig(url=self._get_redis_url())

        super().__init__(config, self.logger)

    def _get_redis_url(self) -> Optional[str]:
        """Get Redis URL from environment variables."""
        for var in ("REDIS_URL", "REDIS_URI"):
            if url := os.environ.get(var):
                self._url_source = var
                self.logger.info(f"Using Redis URL from {var}")
                return url
        return None

    def _validate_config(self) -> None:
        super()._validate_config()

        if not self.config.url:
            self.logger.warning(
                "No Redis URL found. Redis-backed stores will reject operations. "
                "Set REDIS_URL."
            )

    async def _initialize_client(self) -> Optional[redis.Redis]:
        """Initialize the Redis client"""
        if not self.config.url:
            self.logger.warning("Redis disabled - no URL configured")
            return None

        try:
            client = redis.from_url(
                self.config.url,
                decode_responses=self.config.decode_responses,
                socket_timeout=self.config.socket_timeout,
                max_connections=self.config.max_connections,
                retry_on_timeout=self.config.retry_on_timeout,
                health_check_interval=self.config.health_check_interval
            )

            await client.ping()
            self.logger.info("Redis connection successful")
            return client

        except Exception as e:
            self.logger.error(f"Failed to connect to Redis: {e}")
            self.logger.warning("Redis functionality disabled due to connection error")
            return None

    def key(self, *parts: str) -> str:
        """Build a namespaced key, e.g. key("session", sid)"""
        return ":".join((self.config.key_prefix,) + tuple(parts))

    def _require_client(self, operation: str, key: Optional[str] = None) -> redis.Redis:
        if not self._client:
            raise RedisServiceError("Redis is not connected", key=key, operation=operation)
        return self._client

    async def get_json(self, key: str) -> Any:
        """Get and deserialize a JSON value; None when the key is missing."""
        client = self._require_client("get", key)
        try:
            value = await client.get(key)
        except Exception as e:
            raise RedisServiceError(f"Redis get failed: {e}", key=key, operation="get")

        if value is None:
            return None
        try:
            return json.loads(value)
        except json.JSONDecodeError:
            self.logger.warning(f"Non-JSON value stored at '{key}'")
            return None

    async def set_json(self, key: str, value: Any, ttl: Optional[int] = None) -> None:
        """
        Serialize and store a value.

        Args:
            key: The key to set
            value: JSON-serializable value
            ttl: Time to live in seconds
        """
        client = self._require_client("set", key)
        payload = json.dumps(value, default=str)
        try:
            if ttl:
                await client.setex(key, max(int(ttl), 1), payload)
            else:
                await client.set(key, payload)
        except Exception as e:
            raise RedisServiceError(f"Redis set failed: {e}", key=key, operation="set")

    async def mget_json(self, keys: List[str]) -> List[Any]:
        """Get multiple JSON values; missing keys come back as None."""
        if not keys:
            return []
        client = self._require_client("mget")
        try:
            values = await client.mget(keys)
        except Exception as e:
            raise RedisServiceError(f"Redis mget failed: {e}", operation="mget")

        result = []
        for value in values:
            if value is None:
                result.append(None)
                continue
            try:
                result.append(json.loads(value))
            except json.JSONDecodeError:
                result.append(None)
        return result

    async def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        client = self._require_client("delete")
        try:
            return await client.delete(*keys)
        except Exception as e:
            raise RedisServiceError(f"Redis delete failed: {e}", operation="delete")

    async def sadd(self, key: str, *members: str) -> int:
        client = self._require_client("sadd", key)
        try:
            return await client.sadd(key, *members)
        except Exception as e:
            raise RedisServiceError(f"Redis sadd failed: {e}", key=key, operation="sadd")

    async def srem(self, key: str, *members: str) -> int:
        if not members:
            return 0
        client = self._require_client("srem", key)
        try:
            return await client.srem(key, *members)
        except Exception as e:
            raise RedisServiceError(f"Redis srem failed: {e}", key=key, operation="srem")

    async def smembers(self, key: str) -> Set[str]:
        client = self._require_client("smembers", key)
        try:
            members = await client.smembers(key)
        except Exception as e:
            raise RedisServiceError(f"Redis smembers failed: {e}", key=key, operation="smembers")
        return {m.decode() if isinstance(m, bytes) else m for m in members}

    async def zadd(self, key: str, mapping: Dict[str, float]) -> int:
        client = self._require_client("zadd", key)
        try:
            return await client.zadd(key, mapping)
        except Exception as e:
            raise RedisServiceError(f"Redis zadd failed: {e}", key=key, operation="zadd")

    async def zrem(self, key: str, *members: str) -> int:
        if not members:
            return 0
        client = self._require_client("zrem", key)
        try:
            return await client.zrem(key, *members)
        except Exception as e:
            raise RedisServiceError(f"Redis zrem failed: {e}", key=key, operation="zrem")

    async def zrangebyscore(self, key: str, min_score: Score, max_score: Score) -> List[str]:
        """Members with min_score <= score <= max_score, ascending."""
        client = self._require_client("zrangebyscore", key)
        try:
            members = await client.zrangebyscore(key, min_score, max_score)
        except Exception as e:
            raise RedisServiceError(f"Redis zrangebyscore failed: {e}", key=key, operation="zrangebyscore")
        return [m.decode() if isinstance(m, bytes) else m for m in members]

    async def zrevrangebyscore(
        self,
        key: str,
        max_score: Score,
        min_score: Score,
        offset: Optional[int] = None,
        count: Optional[int] = None
    ) -> List[str]:
        """Members with min_score <= score <= max_score, descending; `offset` and `count` slice the result."""
        client = self._require_client("zrevrangebyscore", key)
        try:
            members = await client.zrevrangebyscore(key, max_score, min_score, start=offset, num=count)
        except Exception as e:
            raise RedisServiceError(f"Redis zrevrangebyscore failed: {e}", key=key, operation="zrevrangebyscore")
        return [m.decode() if isinstance(m, bytes) else m for m in members]

    async def zcount(self, key: str, min_score: Score, max_score: Score) -> int:
        client = self._require_client("zcount", key)
        try:
            return await client.zcount(key, min_score, max_score)
        except Exception as e:
            raise RedisServiceError(f"Redis zcount failed: {e}", key=key, operation="zcount")

    async def zremrangebyscore(self, key: str, min_score: Score, max_score: Score) -> int:
        client = self._require_client("zremrangebyscore", key)
        try:
            return await client.zremrangebyscore(key, min_score, max_score)
        except Exception as e:
            raise RedisServiceError(f"Redis zremrangebyscore failed: {e}", key=key, operation="zremrangebyscore")

    async def eval_script(self, source: str, keys: List[str], args: List[Any]) -> Any:
        """
        Run a Lua script atomically on the server.

        Scripts are registered once per source and invoked by SHA,
        falling back to EVAL when the server has not cached them.
        """
        client = self._require_client("eval", keys[0] if keys else None)
        script = self._scripts.get(source)
        if script is None:
            script = self._scripts[source] = client.register_script(source)
        try:
            return await script(keys=keys, args=args)
        except Exception as e:
            raise RedisServiceError(f"Redis script failed: {e}", key=keys[0] if keys else None, operation="eval")

    def lock(self, name: str, timeout: float = 10.0, blocking_timeout: float = 5.0):
        """
        Distributed lock usable as `async with service.lock(...)`.

        `timeout` bounds how long a crashed holder keeps the lock.
        """
        client = self._require_client("lock", name)
        return client.lock(name, timeout=timeout, blocking_timeout=blocking_timeout)

    async def health_check(self) -> Dict[str, Any]:
        """Check Redis service health."""
        if not self.config.url:
            return {
                "healthy": True,  # Not unhealthy, just disabled
                "status": "disabled",
                "details": {"message": "Redis not configured"}
            }

        if not self._client:
            return {
                "healthy": False,
                "status": "not_connected",
                "details": {
                    "url_source": self._url_source,
                    "error": "Client not initialized"
                }
            }

        try:
            await self._client.ping()
            info = await self._client.info()

            return {
                "healthy": True,
                "status": "connected",
                "details": {
                    "url_source": self._url_source,
                    "redis_version": info.get("redis_version", "unknown"),
                    "connected_clients": info.get("connected_clients", 0),
                    "used_memory_human": info.get("used_memory_human", "unknown")
                }
            }

        except Exception as e:
            return {
                "healthy": False,
                "status": "error",
                "details": {
                    "url_source": self._url_source,
                    "error": str(e)
                }
            }

    async def _cleanup(self) -> None:
        """Close the Redis connection"""
        self._scripts.clear()
        if self._client:
            try:
                await self._client.aclose()
            except Exception as e:
                self.logger.warning(f"Error closing Redis client: {e}")

    def is_connected(self) -> bool:
        return self._client is not None


async def create_redis_service(url: Optional[str] = None, **kwargs) -> RedisService:
    """
    Create and initialize a Redis service instance.

    Args:
        url: Redis URL (uses env vars if not provided)
        **kwargs: Additional config parameters
    """
    config = RedisConfig(url=url, **kwargs) if url else None
    service = RedisService(config)
    await service.initialize()
    return service
