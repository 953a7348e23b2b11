from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, Optional

from npmx_server.logging import get_logger
from npmx_server.service.errors import TokenError, TokenInvalidError
from npmx_server.service.lock import RequestLock
from npmx_server.service.oauth import OAuthClient
from npmx_server.service.oauth_stores import OAuthSessionStore
from npmx_server.storage.errors import StorageUnavailableError

logger = get_logger(__name__)

# Refresh slightly before the access token actually expires
DEFAULT_EXPIRY_LEEWAY = timedelta(seconds=10)


def session_subject(record: Optional[Dict[str, Any]]) -> Optional[str]:
    """Subject identifier (DID) a stored session belongs to."""
    if not record:
        return None
    token_set = record.get("tokenSet")
    if isinstance(token_set, dict) and token_set.get("sub"):
        return str(token_set["sub"])
    sub = record.get("sub")
    return str(sub) if sub else None


def token_set_expired(
    token_set: Optional[Dict[str, Any]],
    *,
    now: Optional[datetime] = None,
    leeway: timedelta = DEFAULT_EXPIRY_LEEWAY,
) -> bool:
    """True when the access token is past ``expires_at`` (minus leeway).

    Token sets without an expiry never expire.
    """
    if not token_set:
        return True
    expires_raw = token_set.get("expires_at")
    if not expires_raw:
        return False
    try:
        expires_at = datetime.fromisoformat(str(expires_raw).replace("Z", "+00:00"))
    except ValueError:
        return True
    if expires_at.tzinfo is None:
        expires_at = expires_at.replace(tzinfo=timezone.utc)
    current = now or datetime.now(timezone.utc)
    return current >= expires_at - leeway


async def refresh_under_lock(
    request_lock: RequestLock,
    sub: str,
    *,
    load: Callable[[], Awaitable[Optional[Dict[str, Any]]]],
    refresh: Callable[[Dict[str, Any]], Awaitable[Dict[str, Any]]],
    save: Callable[[Dict[str, Any]], Awaitable[None]],
    is_expired: Callable[[Dict[str, Any]], bool] = lambda rec: token_set_expired(
        rec.get("tokenSet")
    ),
) -> Dict[str, Any]:
    """Refresh the stored session for ``sub`` at most once across holders.

    The record is re-read inside the lock, so a caller that queued behind a
    holder who already rotated the tokens returns the rotated record without
    calling the provider again.
    """

    async def section() -> Dict[str, Any]:
        current = await load()
        if current is None:
            raise TokenInvalidError(f"session record for {sub} vanished during refresh")
        if not is_expired(current):
            logger.debug("oauth_refresh_skipped", sub=sub)
            return current
        refreshed = await refresh(current)
        await save(refreshed)
        logger.info("oauth_session_refreshed", sub=sub)
        return refreshed

    return await request_lock(sub, section)


class SessionRestorer:
    """Turns a stored session record into a live OAuth session.

    Any token refresh happens inside the OAuth client, which was handed the
    request lock at construction. "Not logged in" is the normal state for
    most requests, so every failure to restore reads as ``None``.
    """

    def __init__(self, client: OAuthClient, session_store: OAuthSessionStore) -> None:
        self.client = client
        self.session_store = session_store

    async def current(self) -> Optional[Any]:
        """Restore the session referenced by the request cookie."""
        try:
            record = await self.session_store.get()
        except StorageUnavailableError as exc:
            logger.warning("oauth_session_lookup_failed", error=str(exc))
            return None
        return await self.restore(record)

    async def restore(self, record: Optional[Dict[str, Any]]) -> Optional[Any]:
        if record is None:
            return None
        sub = session_subject(record)
        if not sub:
            logger.warning("oauth_session_without_subject")
            await self.session_store.del_()
            return None
        try:
            return await self.client.restore(sub, refresh="auto")
        except TokenError as exc:
            logger.info(
                "oauth_session_restore_rejected", sub=sub, reason=type(exc).__name__
            )
            await self.session_store.del_()
            return None
        except StorageUnavailableError as exc:
            logger.warning("oauth_session_restore_unavailable", sub=sub, error=str(exc))
            return None


__all__ = [
    "SessionRestorer",
    "refresh_under_lock",
    "session_subject",
    "token_set_expired",
]
