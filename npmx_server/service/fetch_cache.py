"""Stale-while-revalidate cache for outbound registry metadata fetches.

- Fresh hit: return cached data.
- Stale hit: return cached data at once and refresh it in a detached task.
- Miss: fetch, store, return.

Only hosts on the allow-list go through the cache; nothing else is ever
written to it.
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import time
from dataclasses import asdict, dataclass, field
from typing import Any, Callable, Dict, Iterable, Mapping, Optional, Tuple
from urllib.parse import urlsplit

import httpx

from npmx_server.config import DisallowedDomainPolicy
from npmx_server.logging import get_logger
from npmx_server.service.errors import DisallowedDomainError, UpstreamFetchError
from npmx_server.storage.errors import StorageError
from npmx_server.storage.kv import KeyValueStore

logger = get_logger(__name__)

FETCH_CACHE_STORAGE_BASE = "fetch-cache"
FETCH_CACHE_VERSION = "v1"
FETCH_CACHE_DEFAULT_TTL = 60 * 5

# Response headers worth keeping alongside cached bodies
_KEPT_HEADERS = ("content-type", "etag", "last-modified", "cache-control")
# Request headers that select a different representation of the same URL
_VARY_HEADERS = ("accept",)


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class CachedFetchEntry:
    data: Any
    status: int
    headers: Dict[str, str]
    cached_at: int
    ttl: int

    def to_json(self) -> Dict[str, Any]:
        return {
            "data": self.data,
            "status": self.status,
            "headers": self.headers,
            "cachedAt": self.cached_at,
            "ttl": self.ttl,
        }

    @classmethod
    def from_json(cls, raw: Any) -> Optional["CachedFetchEntry"]:
        if not isinstance(raw, dict):
            return None
        try:
            return cls(
                data=raw["data"],
                status=int(raw.get("status", 200)),
                headers=dict(raw.get("headers") or {}),
                cached_at=int(raw["cachedAt"]),
                ttl=int(raw["ttl"]),
            )
        except (KeyError, TypeError, ValueError):
            return None


@dataclass
class CachedFetchResult:
    data: Any
    is_stale: bool
    cached_at: Optional[int] = None
    status: int = 200
    headers: Dict[str, str] = field(default_factory=dict)

    def as_dict(self) -> Dict[str, Any]:
        return asdict(self)


def is_cache_entry_stale(entry: CachedFetchEntry, now_ms: Optional[int] = None) -> bool:
    """An entry is stale once strictly past ``cached_at + ttl``."""
    now = _now_ms() if now_ms is None else now_ms
    return now > entry.cached_at + entry.ttl * 1000


def url_host(url: str) -> Optional[str]:
    """Host (with explicit port, if any) of an absolute URL."""
    try:
        parts = urlsplit(url)
    except ValueError:
        return None
    if parts.scheme not in ("http", "https") or not parts.netloc:
        return None
    return parts.netloc.rsplit("@", 1)[-1].lower()


def is_allowed_domain(url: str, allowed: Iterable[str]) -> bool:
    host = url_host(url)
    if not host:
        return False
    return host in {domain.lower() for domain in allowed}


def _short_hash(value: str) -> str:
    return hashlib.sha256(value.encode("utf-8")).hexdigest()[:16]


def _vary_fingerprint(headers: Optional[Mapping[str, str]]) -> str:
    if not headers:
        return ""
    lowered = {str(name).lower(): str(value) for name, value in headers.items()}
    selected = [f"{name}={lowered[name]}" for name in _VARY_HEADERS if name in lowered]
    return _short_hash("\n".join(selected)) if selected else ""


def generate_fetch_cache_key(
    url: str,
    method: str = "GET",
    body: Any = None,
    *,
    headers: Optional[Mapping[str, str]] = None,
    version: str = FETCH_CACHE_VERSION,
) -> str:
    """Deterministic key from version, host, method, path, query, body and Accept.

    Optional segments are omitted when their input is absent.
    """
    parts = urlsplit(url)
    host = url_host(url) or ""
    search_hash = _short_hash(parts.query) if parts.query else ""
    body_hash = (
        _short_hash(json.dumps(body, sort_keys=True, separators=(",", ":"), default=str))
        if body is not None
        else ""
    )
    segments = [
        version,
        host,
        method.upper(),
        parts.path or "/",
        search_hash,
        body_hash,
        _vary_fingerprint(headers),
    ]
    return ":".join(segment for segment in segments if segment)


class FetchCache:
    """Caches allow-listed GET/POST responses in the key-value store."""

    def __init__(
        self,
        store: KeyValueStore,
        *,
        allowed_domains: Iterable[str],
        default_ttl: int = FETCH_CACHE_DEFAULT_TTL,
        version: str = FETCH_CACHE_VERSION,
        disallowed_policy: DisallowedDomainPolicy = DisallowedDomainPolicy.BYPASS,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 10.0,
        user_agent: str = "npmx",
        clock: Callable[[], int] = _now_ms,
    ) -> None:
        self.store = store
        self.allowed_domains = tuple(domain.lower() for domain in allowed_domains)
        self.default_ttl = default_ttl
        self.version = version
        self.disallowed_policy = DisallowedDomainPolicy(disallowed_policy)
        self.timeout = timeout
        self.user_agent = user_agent
        self._clock = clock
        self._client = client
        self._owns_client = client is None
        self._revalidating: Dict[str, asyncio.Task] = {}

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.timeout, connect=min(self.timeout, 5.0)),
                headers={"User-Agent": self.user_agent},
                follow_redirects=True,
            )
        return self._client

    def is_allowed(self, url: str) -> bool:
        return is_allowed_domain(url, self.allowed_domains)

    async def _fetch(
        self,
        url: str,
        method: str,
        body: Any,
        headers: Optional[Dict[str, str]],
    ) -> Tuple[Any, int, Dict[str, str]]:
        client = self._get_client()
        try:
            response = await client.request(
                method,
                url,
                json=body,
                headers=headers,
            )
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise UpstreamFetchError(
                f"upstream returned {exc.response.status_code}",
                upstream_status=exc.response.status_code,
                url=url,
            ) from exc
        except httpx.RequestError as exc:
            raise UpstreamFetchError(
                f"upstream request failed: {type(exc).__name__}", url=url
            ) from exc

        content_type = response.headers.get("content-type", "")
        if "json" in content_type:
            try:
                data = response.json()
            except ValueError as exc:
                raise UpstreamFetchError("upstream returned invalid JSON", url=url) from exc
        else:
            data = response.text
        kept = {
            name: response.headers[name] for name in _KEPT_HEADERS if name in response.headers
        }
        return data, response.status_code, kept

    async def _read(self, cache_key: str, url: str) -> Optional[CachedFetchEntry]:
        try:
            raw = await self.store.get(FETCH_CACHE_STORAGE_BASE, cache_key)
        except StorageError as exc:
            logger.warning("fetch_cache_read_failed", url=url, error=str(exc))
            return None
        return CachedFetchEntry.from_json(raw)

    async def _write(self, cache_key: str, entry: CachedFetchEntry, url: str) -> None:
        try:
            await self.store.set(FETCH_CACHE_STORAGE_BASE, cache_key, entry.to_json())
        except StorageError as exc:
            logger.warning("fetch_cache_write_failed", url=url, error=str(exc))

    async def cached_fetch(
        self,
        url: str,
        *,
        method: str = "GET",
        body: Any = None,
        headers: Optional[Dict[str, str]] = None,
        ttl: Optional[int] = None,
    ) -> CachedFetchResult:
        method = (method or "GET").upper()
        if not self.is_allowed(url):
            if self.disallowed_policy is DisallowedDomainPolicy.REJECT:
                raise DisallowedDomainError(
                    "host is not allowed for cached fetches", detail={"host": url_host(url)}
                )
            logger.debug("fetch_cache_bypass", url=url)
            data, status, kept = await self._fetch(url, method, body, headers)
            return CachedFetchResult(data=data, is_stale=False, cached_at=None, status=status, headers=kept)

        ttl = self.default_ttl if ttl is None else ttl
        cache_key = generate_fetch_cache_key(
            url, method, body, headers=headers, version=self.version
        )
        cached = await self._read(cache_key, url)

        if cached is not None:
            if not is_cache_entry_stale(cached, self._clock()):
                logger.debug("fetch_cache_hit", url=url, fresh=True)
                return CachedFetchResult(
                    data=cached.data,
                    is_stale=False,
                    cached_at=cached.cached_at,
                    status=cached.status,
                    headers=cached.headers,
                )
            logger.debug("fetch_cache_hit", url=url, fresh=False)
            self._schedule_revalidation(cache_key, url, method, body, headers, ttl)
            return CachedFetchResult(
                data=cached.data,
                is_stale=True,
                cached_at=cached.cached_at,
                status=cached.status,
                headers=cached.headers,
            )

        logger.debug("fetch_cache_miss", url=url)
        data, status, kept = await self._fetch(url, method, body, headers)
        cached_at = self._clock()
        await self._write(
            cache_key,
            CachedFetchEntry(data=data, status=status, headers=kept, cached_at=cached_at, ttl=ttl),
            url,
        )
        return CachedFetchResult(
            data=data, is_stale=False, cached_at=cached_at, status=status, headers=kept
        )

    def _schedule_revalidation(
        self,
        cache_key: str,
        url: str,
        method: str,
        body: Any,
        headers: Optional[Dict[str, str]],
        ttl: int,
    ) -> None:
        if cache_key in self._revalidating:
            return
        task = asyncio.get_running_loop().create_task(
            self._revalidate(cache_key, url, method, body, headers, ttl)
        )
        self._revalidating[cache_key] = task
        task.add_done_callback(lambda done: self._revalidation_done(cache_key, url, done))

    def _revalidation_done(self, cache_key: str, url: str, task: asyncio.Task) -> None:
        self._revalidating.pop(cache_key, None)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(
                "fetch_cache_revalidate_crashed",
                url=url,
                error_type=type(exc).__name__,
                error=str(exc),
            )

    async def _revalidate(
        self,
        cache_key: str,
        url: str,
        method: str,
        body: Any,
        headers: Optional[Dict[str, str]],
        ttl: int,
    ) -> None:
        # Failures stay here; the stale response was already returned
        try:
            data, status, kept = await self._fetch(url, method, body, headers)
        except UpstreamFetchError as exc:
            logger.warning(
                "fetch_cache_revalidate_failed",
                url=url,
                upstream_status=exc.upstream_status,
                error=exc.message,
            )
            return
        entry = CachedFetchEntry(
            data=data, status=status, headers=kept, cached_at=self._clock(), ttl=ttl
        )
        await self._write(cache_key, entry, url)
        logger.debug("fetch_cache_revalidated", url=url)

    @property
    def pending_revalidations(self) -> int:
        return len(self._revalidating)

    async def drain(self) -> None:
        """Wait for in-flight background revalidations."""
        tasks = list(self._revalidating.values())
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def close(self) -> None:
        await self.drain()
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None


__all__ = [
    "CachedFetchEntry",
    "CachedFetchResult",
    "FetchCache",
    "FETCH_CACHE_STORAGE_BASE",
    "FETCH_CACHE_DEFAULT_TTL",
    "FETCH_CACHE_VERSION",
    "generate_fetch_cache_key",
    "is_allowed_domain",
    "is_cache_entry_stale",
    "url_host",
]
