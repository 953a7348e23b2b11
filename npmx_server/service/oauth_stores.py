"""Cookie-keyed OAuth state and session stores.

Cookies only ever carry an opaque lookup key; the record itself lives in the
key-value store under the store's namespace.
"""

from __future__ import annotations

from typing import Any, Dict, Mapping, Optional

from fastapi import Request, Response

from npmx_server.config import Settings
from npmx_server.logging import get_logger
from npmx_server.storage.errors import StorageError
from npmx_server.storage.kv import KeyValueStore

logger = get_logger(__name__)

OAUTH_STATE_CACHE_STORAGE_BASE = "oauth-atproto-state"
OAUTH_SESSION_CACHE_STORAGE_BASE = "oauth-atproto-session"

OAUTH_STATE_COOKIE = "oauth:atproto:state"
OAUTH_SESSION_COOKIE = "oauth:atproto:session"


class CookieJar:
    """Cookies of one HTTP exchange.

    Reads see writes made earlier in the same exchange. Pending writes are
    copied onto the outgoing response with :meth:`apply`.
    """

    def __init__(self, incoming: Optional[Mapping[str, str]] = None, *, secure: bool = True):
        self._incoming: Dict[str, str] = dict(incoming or {})
        self._outgoing: Dict[str, Optional[str]] = {}
        self.secure = secure

    @classmethod
    def from_request(cls, request: Request, settings: Settings) -> "CookieJar":
        return cls(request.cookies, secure=not settings.dev_mode)

    def get(self, name: str) -> Optional[str]:
        if name in self._outgoing:
            return self._outgoing[name]
        return self._incoming.get(name) or None

    def set(self, name: str, value: str) -> None:
        self._outgoing[name] = value

    def delete(self, name: str) -> None:
        self._outgoing[name] = None

    @property
    def pending(self) -> Dict[str, Optional[str]]:
        return dict(self._outgoing)

    def apply(self, response: Response) -> Response:
        for name, value in self._outgoing.items():
            if value is None:
                response.delete_cookie(
                    name, path="/", secure=self.secure, httponly=True, samesite="lax"
                )
            else:
                response.set_cookie(
                    name,
                    value,
                    path="/",
                    secure=self.secure,
                    httponly=True,
                    samesite="lax",
                )
        return response


class CookieKeyedStore:
    """Record store addressed through a cookie holding its storage key."""

    namespace: str = ""
    cookie_name: str = ""

    def __init__(
        self, kv: KeyValueStore, cookies: CookieJar, *, ttl: Optional[int] = None
    ) -> None:
        self.kv = kv
        self.cookies = cookies
        self.ttl = ttl

    def current_key(self) -> Optional[str]:
        return self.cookies.get(self.cookie_name)

    async def get(self) -> Optional[Dict[str, Any]]:
        """Return the record the cookie points to, or ``None``.

        A cookie pointing at an expired or evicted record reads as no record.
        Transport failures propagate as ``StorageUnavailableError``.
        """
        key = self.current_key()
        if not key:
            return None
        record = await self.kv.get(self.namespace, key)
        if not record:
            return None
        return record

    async def set(self, key: str, record: Dict[str, Any]) -> None:
        if not key:
            raise ValueError("record key is required")
        await self.kv.set(self.namespace, key, record, ttl=self.ttl)
        self.cookies.set(self.cookie_name, key)

    async def del_(self) -> None:
        """Drop the record and clear the cookie.

        Storage deletion is best-effort; the cookie is cleared regardless.
        """
        key = self.current_key()
        self.cookies.delete(self.cookie_name)
        if not key:
            return
        try:
            await self.kv.delete(self.namespace, key)
        except StorageError as exc:
            logger.warning(
                "oauth_store_delete_failed",
                namespace=self.namespace,
                error=str(exc),
            )

    delete = del_


class OAuthStateStore(CookieKeyedStore):
    """Pending authorization requests, one per client."""

    namespace = OAUTH_STATE_CACHE_STORAGE_BASE
    cookie_name = OAUTH_STATE_COOKIE


class OAuthSessionStore(CookieKeyedStore):
    """Established sessions, keyed by the subject the client supplies."""

    # TODO: multi-account support needs one cookie per subject instead of a single slot
    namespace = OAUTH_SESSION_CACHE_STORAGE_BASE
    cookie_name = OAUTH_SESSION_COOKIE


def use_oauth_storage(
    kv: KeyValueStore, cookies: CookieJar, settings: Settings
) -> tuple[OAuthStateStore, OAuthSessionStore]:
    """Build both stores bound to the same exchange."""
    return (
        OAuthStateStore(kv, cookies, ttl=settings.oauth_state_ttl_seconds),
        OAuthSessionStore(kv, cookies, ttl=settings.oauth_session_ttl_seconds),
    )


__all__ = [
    "CookieJar",
    "CookieKeyedStore",
    "OAuthStateStore",
    "OAuthSessionStore",
    "OAUTH_STATE_CACHE_STORAGE_BASE",
    "OAUTH_SESSION_CACHE_STORAGE_BASE",
    "OAUTH_STATE_COOKIE",
    "OAUTH_SESSION_COOKIE",
    "use_oauth_storage",
]
