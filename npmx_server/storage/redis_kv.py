from __future__ import annotations

from typing import Any, Optional

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from npmx_server.logging import get_logger
from npmx_server.storage.errors import StorageUnavailableError
from npmx_server.storage.kv import decode_value, encode_value, storage_key

logger = get_logger(__name__)


class RedisKVStore:
    """Redis-backed key-value store shared by every server instance."""

    # Atomic compare-and-delete used to release locks owned by the caller
    _DELETE_IF_EQUALS_SCRIPT = """
if redis.call('GET', KEYS[1]) == ARGV[1] then
  return redis.call('DEL', KEYS[1])
end
return 0
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.socket_timeout = socket_timeout
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._delete_if_equals = self.client.register_script(
            self._DELETE_IF_EQUALS_SCRIPT
        )

    @staticmethod
    def _ex(ttl: Optional[int]) -> Optional[int]:
        # Redis rejects zero or negative expiries
        if ttl is None:
            return None
        return max(1, int(ttl))

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        from redis import Redis

        # Short-lived sync client so the async pool is not bound to a startup loop
        sync_client = Redis.from_url(
            self.redis_url,
            decode_responses=True,
            socket_timeout=self.socket_timeout,
            socket_connect_timeout=self.socket_timeout,
        )
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def get(self, namespace: str, key: str) -> Optional[Any]:
        full_key = storage_key(namespace, key)
        try:
            raw = await self.client.get(full_key)
        except RedisError as exc:
            raise StorageUnavailableError(
                "redis read failed", {"key": full_key, "error": str(exc)}
            ) from exc
        return decode_value(raw, key=full_key)

    async def set(
        self, namespace: str, key: str, value: Any, ttl: Optional[int] = None
    ) -> None:
        full_key = storage_key(namespace, key)
        try:
            await self.client.set(full_key, encode_value(value), ex=self._ex(ttl))
        except RedisError as exc:
            raise StorageUnavailableError(
                "redis write failed", {"key": full_key, "error": str(exc)}
            ) from exc

    async def delete(self, namespace: str, key: str) -> None:
        full_key = storage_key(namespace, key)
        try:
            await self.client.delete(full_key)
        except RedisError as exc:
            raise StorageUnavailableError(
                "redis delete failed", {"key": full_key, "error": str(exc)}
            ) from exc

    async def set_if_absent(
        self, namespace: str, key: str, value: Any, ttl: int
    ) -> bool:
        full_key = storage_key(namespace, key)
        try:
            acquired = await self.client.set(
                full_key, encode_value(value), ex=self._ex(ttl), nx=True
            )
        except RedisError as exc:
            raise StorageUnavailableError(
                "redis set-if-absent failed", {"key": full_key, "error": str(exc)}
            ) from exc
        return bool(acquired)

    async def delete_if_equals(self, namespace: str, key: str, expected: Any) -> bool:
        full_key = storage_key(namespace, key)
        try:
            deleted = await self._delete_if_equals(
                keys=[full_key], args=[encode_value(expected)]
            )
        except RedisError as exc:
            raise StorageUnavailableError(
                "redis compare-and-delete failed", {"key": full_key, "error": str(exc)}
            ) from exc
        return bool(int(deleted or 0))

    async def close(self) -> None:
        """Close the connection pool. Call when shutting down or resetting runtime."""
        await self.client.aclose()
        await self.client.connection_pool.disconnect()
