import redis.asyncio as aioredis
import json
import logging
from typing import Any, Optional
from .config import settings

logger = logging.getLogger(__name__)


class CacheManager:
    """Async redis cache; every failure degrades to a cache miss"""

    def __init__(self, redis_url: Optional[str] = None, default_ttl: Optional[int] = None, enabled: Optional[bool] = None):
        self.redis_url = redis_url or settings.redis_url
        self.default_ttl = default_ttl or settings.cache_default_ttl
        self.enabled = settings.cache_enabled if enabled is None else enabled
        self._async_client = None

    async def get_async_client(self) -> aioredis.Redis:
        """Get asynchronous Redis client"""
        if self._async_client is None:
            try:
                self._async_client = aioredis.from_url(
                    self.redis_url,
                    decode_responses=True,
                    socket_connect_timeout=5,
                    socket_timeout=5,
                    retry_on_timeout=True,
                    health_check_interval=30
                )
                await self._async_client.ping()
            except Exception as e:
                logger.warning(f"Failed to create async Redis client: {e}")
                self._async_client = None
                raise
        return self._async_client

    def _serialize_value(self, value: Any) -> str:
        try:
            return json.dumps(value, default=str)
        except (TypeError, ValueError) as e:
            logger.warning(f"Cache serialization error: {e}")
            return json.dumps(str(value))

    def _deserialize_value(self, value: str) -> Any:
        if value is None:
            return None
        try:
            return json.loads(value)
        except (json.JSONDecodeError, TypeError) as e:
            logger.warning(f"Cache deserialization error: {e}")
            return None

    def _drop_broken_client(self, error: Exception):
        if "connection" in str(error).lower() or "timeout" in str(error).lower():
            self._async_client = None

    async def aget(self, key: str) -> Optional[Any]:
        """Get value from cache (async)"""
        if not self.enabled:
            return None
        try:
            client = await self.get_async_client()
            value = await client.get(key)
            return self._deserialize_value(value) if value else None
        except Exception as e:
            logger.warning(f"Async cache get error for key '{key}': {e}")
            self._drop_broken_client(e)
            return None

    async def aset(self, key: str, value: Any, ttl: Optional[int] = None) -> bool:
        """Set value in cache (async)"""
        if not self.enabled:
            return False
        try:
            client = await self.get_async_client()
            ttl = ttl or self.default_ttl
            result = await client.setex(key, ttl, self._serialize_value(value))
            return bool(result)
        except Exception as e:
            logger.warning(f"Async cache set error for key '{key}': {e}")
            self._drop_broken_client(e)
            return False

    async def adelete(self, key: str) -> bool:
        """Delete key from cache (async)"""
        if not self.enabled:
            return False
        try:
            client = await self.get_async_client()
            return bool(await client.delete(key))
        except Exception as e:
            logger.warning(f"Async cache delete error for key '{key}': {e}")
            self._drop_broken_client(e)
            return False

    async def ahealth_check(self) -> bool:
        if not self.enabled:
            return False
        try:
            client = await self.get_async_client()
            return bool(await client.ping())
        except Exception as e:
            logger.warning(f"Cache health check failed: {e}")
            return False

    async def aclose(self):
        if self._async_client is not None:
            await self._async_client.close()
            self._async_client = None


cache = CacheManager()


def exam_cache_key(exam_id: str) -> str:
    return f"exam:{exam_id}"
