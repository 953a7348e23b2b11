"""Mutual exclusion for OAuth token refresh.

``DistributedLock`` serializes a named critical section across server
instances that share nothing but the key-value store. It never blocks for
long: one acquire, one retry after a short backoff, and then the section runs
unlocked. An unsynchronized double refresh costs at worst a forced
re-authentication.

``LocalLock`` is the single-instance variant: an in-process mutex per key with
no storage round trip.

Both are callables with the ``request_lock(key, fn)`` signature the OAuth
client expects.
"""

from __future__ import annotations

import asyncio
import inspect
import uuid
from typing import Any, Awaitable, Callable, Dict, Optional, TypeVar, Union

from npmx_server.config import StorageConfig
from npmx_server.logging import get_logger
from npmx_server.storage.errors import StorageError
from npmx_server.storage.kv import KeyValueStore

logger = get_logger(__name__)

T = TypeVar("T")
CriticalSection = Callable[[], Union[T, Awaitable[T]]]
RequestLock = Callable[[str, CriticalSection], Awaitable[Any]]

LOCK_NAMESPACE = "oauth:lock"
DEFAULT_LOCK_TTL_SECONDS = 30
DEFAULT_RETRY_DELAY_SECONDS = 0.1


async def _run(section: CriticalSection) -> Any:
    result = section()
    if inspect.isawaitable(result):
        result = await result
    return result


class DistributedLock:
    """Storage-coordinated lock with bounded retry and degraded fallback."""

    def __init__(
        self,
        store: KeyValueStore,
        *,
        ttl_seconds: int = DEFAULT_LOCK_TTL_SECONDS,
        retry_delay: float = DEFAULT_RETRY_DELAY_SECONDS,
        namespace: str = LOCK_NAMESPACE,
        atomic_release: Optional[bool] = None,
    ) -> None:
        self.store = store
        self.ttl_seconds = ttl_seconds
        self.retry_delay = retry_delay
        self.namespace = namespace
        if atomic_release is None:
            atomic_release = callable(getattr(store, "delete_if_equals", None))
        self.atomic_release = atomic_release

    async def __call__(self, key: str, section: CriticalSection) -> Any:
        return await self.with_lock(key, section)

    async def _try_acquire(self, key: str, owner: str) -> bool:
        try:
            return await self.store.set_if_absent(
                self.namespace, key, owner, self.ttl_seconds
            )
        except StorageError as exc:
            logger.warning(
                "oauth_lock_acquire_failed", key=key, error=str(exc), retryable=exc.retryable
            )
            return False

    async def with_lock(self, key: str, section: CriticalSection) -> Any:
        """Run ``section`` while holding the lock for ``key`` when possible.

        Exceptions from ``section`` propagate after the release attempt.
        """
        owner = uuid.uuid4().hex
        acquired = await self._try_acquire(key, owner)
        if not acquired:
            await asyncio.sleep(self.retry_delay)
            acquired = await self._try_acquire(key, owner)
        if not acquired:
            logger.warning("oauth_lock_degraded", key=key)
            return await _run(section)

        logger.debug("oauth_lock_acquired", key=key, owner=owner)
        try:
            return await _run(section)
        finally:
            await self._release(key, owner)

    async def _release(self, key: str, owner: str) -> None:
        try:
            if self.atomic_release:
                released = await self.store.delete_if_equals(self.namespace, key, owner)
            else:
                released = await self._release_non_atomic(key, owner)
        except Exception as exc:
            # the entry expires on its own; the section's outcome stands
            logger.warning(
                "oauth_lock_release_failed", key=key, error_type=type(exc).__name__, error=str(exc)
            )
            return
        if not released:
            logger.info("oauth_lock_lost_before_release", key=key, owner=owner)

    async def _release_non_atomic(self, key: str, owner: str) -> bool:
        # Read and delete are separate round trips. If the entry expires and
        # another owner acquires it between them, that owner's entry is
        # deleted. The window is bounded by the lock TTL.
        current = await self.store.get(self.namespace, key)
        if current != owner:
            return False
        await self.store.delete(self.namespace, key)
        return True


class LocalLock:
    """Per-key in-process mutex for single-instance deployments."""

    def __init__(self) -> None:
        self._locks: Dict[str, asyncio.Lock] = {}
        self._users: Dict[str, int] = {}

    async def __call__(self, key: str, section: CriticalSection) -> Any:
        return await self.with_lock(key, section)

    async def with_lock(self, key: str, section: CriticalSection) -> Any:
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._users[key] = self._users.get(key, 0) + 1
        try:
            async with lock:
                return await _run(section)
        finally:
            self._users[key] -= 1
            if self._users[key] == 0:
                self._users.pop(key, None)
                self._locks.pop(key, None)

    def held(self, key: str) -> bool:
        lock = self._locks.get(key)
        return bool(lock and lock.locked())


def build_request_lock(
    config: StorageConfig,
    store: KeyValueStore,
    *,
    ttl_seconds: int = DEFAULT_LOCK_TTL_SECONDS,
    retry_delay: float = DEFAULT_RETRY_DELAY_SECONDS,
) -> Union[DistributedLock, LocalLock]:
    """Pick the lock implementation for the resolved storage backend."""
    if config.distributed:
        logger.info("oauth_lock_selected", kind="distributed", ttl_seconds=ttl_seconds)
        return DistributedLock(store, ttl_seconds=ttl_seconds, retry_delay=retry_delay)
    logger.info("oauth_lock_selected", kind="local")
    return LocalLock()


__all__ = [
    "DistributedLock",
    "LocalLock",
    "RequestLock",
    "LOCK_NAMESPACE",
    "build_request_lock",
]
