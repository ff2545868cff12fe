# theme_guard/services/redis_service.py
"""
Redis-backed TTL store for rate-limit windows and session records.

Async wrapper around redis.asyncio with:
- Flexible URL discovery for hosted Redis providers
- Bounded socket timeouts
- Atomic increment-with-TTL through a Lua script
- Health checks
"""
import os
import redis.asyncio as redis
from typing import Optional, Dict, Any
from dataclasses import dataclass
import logging

from theme_guard.core.config import REDIS_URL_ENV_VARS
from theme_guard.core.service_base import BaseService, ServiceConfig
from theme_guard.core.exceptions import store_error
from theme_guard.services.kv_store import KVStore

logger = logging.getLogger(__name__)

# INCRBY and first-time PEXPIRE in one server-side step, so a counter can
# never be created without a TTL or reset by a concurrent request.
# ARGV[2] is the TTL in milliseconds.
INCREMENT_WITH_TTL_SCRIPT = """
local count = redis.call('INCRBY', KEYS[1], ARGV[1])
if count == tonumber(ARGV[1]) then
    redis.call('PEXPIRE', KEYS[1], ARGV[2])
end
return count
"""


@dataclass
class RedisConfig(ServiceConfig):
    """Configuration for the Redis store"""
    url: Optional[str] = None
    key_prefix: str = "theme_guard:"
    socket_timeout: float = 2.0
    max_connections: int = 10
    retry_on_timeout: bool = False
    health_check_interval: int = 30


class RedisStore(BaseService[RedisConfig], KVStore):
    """
    KVStore implementation on Redis.

    Every operation raises StoreUnavailableError when Redis is not connected
    or fails; the callers decide whether to fail open or closed.
    """

    name = "Redis"

    def __init__(self, config: Optional[RedisConfig] = None):
        self._url_source = None

        if config is None:
            config = RedisConfig(url=self._get_redis_url())

        super().__init__(config, logger)

    def _get_redis_url(self) -> Optional[str]:
        for var in REDIS_URL_ENV_VARS:
            if url := os.environ.get(var):
                self._url_source = var
                logger.info(f"Using Redis URL from {var}")
                return url
        return None

    def _validate_config(self) -> None:
        super()._validate_config()

        if not self.config.url:
            self.logger.warning(
                "No Redis URL found. Shared state is unavailable. "
                "Set one of: " + ", ".join(REDIS_URL_ENV_VARS)
            )

    async def _initialize_client(self) -> Optional[redis.Redis]:
        if not self.config.url:
            return None

        try:
            client = redis.from_url(
                self.config.url,
                decode_responses=False,
                socket_timeout=self.config.socket_timeout,
                socket_connect_timeout=self.config.socket_timeout,
                max_connections=self.config.max_connections,
                retry_on_timeout=self.config.retry_on_timeout,
                health_check_interval=self.config.health_check_interval
            )

            await client.ping()
            self.logger.info("Redis connection successful")
            return client

        except Exception as e:
            # Not fatal: every operation reports StoreUnavailableError instead
            self.logger.error(f"Failed to connect to Redis: {type(e).__name__}")
            return None

    def _key(self, key: str) -> str:
        return f"{self.config.key_prefix}{key}"

    def _require_client(self, key: str, operation: str) -> redis.Redis:
        if not self._client:
            raise store_error("Redis is not connected", key=key, operation=operation, store=self.name)
        return self._client

    async def get(self, key: str) -> Optional[bytes]:
        client = self._require_client(key, "get")
        try:
            return await client.get(self._key(key))
        except Exception as e:
            raise store_error(f"Redis get failed: {type(e).__name__}", key=key, operation="get", store=self.name) from e

    async def set(self, key: str, value: bytes, ttl: int) -> bool:
        client = self._require_client(key, "set")
        if ttl <= 0:
            return False
        try:
            return bool(await client.set(self._key(key), value, ex=ttl))
        except Exception as e:
            raise store_error(f"Redis set failed: {type(e).__name__}", key=key, operation="set", store=self.name) from e

    async def delete(self, key: str) -> bool:
        client = self._require_client(key, "delete")
        try:
            return await client.delete(self._key(key)) > 0
        except Exception as e:
            raise store_error(f"Redis delete failed: {type(e).__name__}", key=key, operation="delete", store=self.name) from e

    async def touch(self, key: str, ttl: int) -> bool:
        client = self._require_client(key, "touch")
        if ttl <= 0:
            return False
        try:
            return bool(await client.expire(self._key(key), ttl))
        except Exception as e:
            raise store_error(f"Redis expire failed: {type(e).__name__}", key=key, operation="touch", store=self.name) from e

    async def atomic_increment(self, key: str, ttl: float, amount: int = 1) -> int:
        client = self._require_client(key, "atomic_increment")
        ttl_ms = max(1, int(round(ttl * 1000)))
        try:
            count = await client.eval(INCREMENT_WITH_TTL_SCRIPT, 1, self._key(key), amount, ttl_ms)
            return int(count)
        except Exception as e:
            raise store_error(
                f"Redis increment failed: {type(e).__name__}",
                key=key,
                operation="atomic_increment",
                store=self.name
            ) from e

    async def health_check(self) -> Dict[str, Any]:
        if not self.config.url:
            return {
                "healthy": False,
                "status": "disabled",
                "details": {
                    "message": "Redis not configured"
                }
            }

        try:
            if not self._client:
                return {
                    "healthy": False,
                    "status": "not_connected",
                    "details": {
                        "url_source": self._url_source,
                        "error": "Client not initialized"
                    }
                }

            await self._client.ping()
            info = await self._client.info()

            return {
                "healthy": True,
                "status": "connected",
                "details": {
                    "url_source": self._url_source,
                    "redis_version": info.get("redis_version", "unknown"),
                    "connected_clients": info.get("connected_clients", 0),
                }
            }

        except Exception as e:
            return {
                "healthy": False,
                "status": "error",
                "details": {
                    "url_source": self._url_source,
                    "error": type(e).__name__
                }
            }

    async def _cleanup(self) -> None:
        if self._client:
            try:
                await self._client.aclose()
            except Exception as e:
                self.logger.warning(f"Error closing Redis client: {type(e).__name__}")

    def is_connected(self) -> bool:
        return self._client is not None


async def create_redis_store(url: str, **kwargs) -> RedisStore:
    """
    Create and initialize a Redis store.

    Args:
        url: Redis URL, usually from Settings.resolve_redis_url()
        **kwargs: Additional config parameters

    Returns:
        Initialized RedisStore (check is_connected(): a failed ping is not fatal)
    """
    store = RedisStore(RedisConfig(url=url, **kwargs))
    await store.initialize()
    return store
