from __future__ import annotations

import asyncio
import threading
from typing import Optional, Tuple
from urllib.parse import urlparse, urlunparse

import httpx

from npmx_server.config import KVBackend, Settings, StorageConfig, get_settings, reset_settings_cache
from npmx_server.logging import get_logger
from npmx_server.service.errors import ConfigurationError
from npmx_server.service.fetch_cache import FetchCache
from npmx_server.service.lock import DistributedLock, LocalLock, build_request_lock
from npmx_server.service.oauth import (
    OAuthClient,
    OAuthClientFactory,
    OAuthClientMetadata,
    get_oauth_client_metadata,
)
from npmx_server.service.oauth_stores import (
    CookieJar,
    OAuthSessionStore,
    OAuthStateStore,
    use_oauth_storage,
)
from npmx_server.service.session import SessionRestorer
from npmx_server.storage.kv import KeyValueStore
from npmx_server.storage.memory import MemoryKVStore
from npmx_server.storage.redis_kv import RedisKVStore

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a URL for logging.

    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
        if parsed.password:
            netloc = parsed.hostname or ""
            if parsed.port:
                netloc = f"{netloc}:{parsed.port}"
            if parsed.username:
                netloc = f"{parsed.username}:***@{netloc}"
            else:
                netloc = f":***@{netloc}"
            return urlunparse((
                parsed.scheme,
                netloc,
                parsed.path,
                parsed.params,
                parsed.query,
                parsed.fragment,
            ))
        return url
    except ValueError:
        return "***url_parse_error***"


def _build_store(settings: Settings, config: StorageConfig) -> Tuple[KeyValueStore, StorageConfig]:
    """Connect the configured backend, falling back to memory where allowed."""
    if not config.distributed:
        return MemoryKVStore(), config

    redis_error: Exception | None = None
    try:
        store = RedisKVStore(config.redis_url, socket_timeout=config.socket_timeout)
        store.verify_connection()
        return store, config
    except Exception as exc:
        redis_error = exc

    if not settings.test_mode and not settings.allow_kv_fallback_dev:
        raise RuntimeError(
            "Redis is required for shared OAuth sessions and locks; start Redis or set "
            "TEST_MODE=true/ALLOW_KV_FALLBACK_DEV=true for a single-instance fallback."
        ) from redis_error

    logger.warning(
        "redis_disabled_fallback",
        redis_url=_mask_url_password(config.redis_url),
        error=str(redis_error),
        message="Running without Redis; OAuth sessions and locks are process-local.",
    )
    return MemoryKVStore(), StorageConfig(backend=KVBackend.MEMORY)


class Runtime:
    """Holds the shared storage, lock and cache instances for the app.

    The storage choice is resolved once here and injected into every
    component.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        storage_config: Optional[StorageConfig] = None,
        store: Optional[KeyValueStore] = None,
        oauth_client_factory: Optional[OAuthClientFactory] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.settings = settings or get_settings()
        config = storage_config or StorageConfig.from_settings(self.settings)
        if store is None:
            store, config = _build_store(self.settings, config)
        self.store = store
        self.storage_config = config
        self.request_lock: DistributedLock | LocalLock = build_request_lock(
            config,
            store,
            ttl_seconds=self.settings.lock_ttl_seconds,
            retry_delay=self.settings.lock_retry_delay_ms / 1000.0,
        )
        self.fetch_cache = FetchCache(
            store,
            allowed_domains=self.settings.fetch_cache_allowed_domains,
            default_ttl=self.settings.fetch_cache_default_ttl,
            version=self.settings.fetch_cache_version,
            disallowed_policy=self.settings.fetch_cache_disallowed_policy,
            client=http_client,
            timeout=self.settings.fetch_timeout_seconds,
            user_agent=self.settings.fetch_user_agent,
        )
        self.oauth_client_factory = oauth_client_factory
        self.client_metadata: OAuthClientMetadata = get_oauth_client_metadata(self.settings)
        logger.info(
            "runtime_initialized",
            kv_backend=config.backend.value,
            lock="distributed" if isinstance(self.request_lock, DistributedLock) else "local",
            oauth_client_configured=oauth_client_factory is not None,
        )

    def oauth_storage(self, cookies: CookieJar) -> Tuple[OAuthStateStore, OAuthSessionStore]:
        return use_oauth_storage(self.store, cookies, self.settings)

    def oauth_client(
        self,
        state_store: OAuthStateStore,
        session_store: OAuthSessionStore,
    ) -> OAuthClient:
        if self.oauth_client_factory is None:
            raise ConfigurationError("OAuth client not configured")
        return self.oauth_client_factory(
            state_store=state_store,
            session_store=session_store,
            client_metadata=self.client_metadata,
            request_lock=self.request_lock,
        )

    def session_restorer(self, cookies: CookieJar) -> Optional[SessionRestorer]:
        """Restorer bound to one exchange, or ``None`` without an OAuth client."""
        if self.oauth_client_factory is None:
            return None
        state_store, session_store = self.oauth_storage(cookies)
        return SessionRestorer(self.oauth_client(state_store, session_store), session_store)

    async def close(self) -> None:
        await self.fetch_cache.close()
        await self.store.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()
# store closes started from inside a running loop, held until done
_pending_closes: set[asyncio.Task] = set()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton (double-checked locking)."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def set_runtime(value: Runtime) -> Runtime:
    """Install a preconfigured runtime (OAuth client factory, HTTP client)."""
    global runtime
    with _runtime_lock:
        runtime = value
        return runtime


def _pending_close_done(task: asyncio.Task) -> None:
    _pending_closes.discard(task)
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.warning(
            "runtime_store_close_failed", error_type=type(exc).__name__, error=str(exc)
        )


async def wait_for_pending_closes() -> None:
    """Wait for store closes that a reset scheduled on the running loop."""
    if _pending_closes:
        await asyncio.gather(*list(_pending_closes), return_exceptions=True)


def reset_runtime_for_tests() -> None:
    """Drop the runtime singleton and cached settings between tests."""
    global runtime

    with _runtime_lock:
        previous, runtime = runtime, None
    reset_settings_cache()
    if previous is None or not isinstance(previous.store, RedisKVStore):
        return
    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        asyncio.run(previous.store.close())
        return
    task = loop.create_task(previous.store.close())
    _pending_closes.add(task)
    task.add_done_callback(_pending_close_done)
