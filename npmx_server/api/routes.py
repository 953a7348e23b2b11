from __future__ import annotations

import asyncio
from typing import Any, Dict, Optional
from urllib.parse import quote

from fastapi import APIRouter, Depends, Request, Response
from fastapi.responses import RedirectResponse
from pydantic import ValidationError

from npmx_server.api.schemas import HealthCheck
from npmx_server.config import SLINGSHOT_HOST, UNSET_SESSION_PASSWORD
from npmx_server.logging import get_logger
from npmx_server.service.errors import (
    AuthenticationError,
    BadRequestError,
    ConfigurationError,
    TokenError,
    UpstreamFetchError,
)
from npmx_server.service.fetch_cache import FetchCache
from npmx_server.service.lock import DistributedLock
from npmx_server.service.oauth import OAUTH_SCOPE, OAuthSession, UserSession
from npmx_server.service.oauth_stores import CookieJar
from npmx_server.service.runtime import get_runtime

logger = get_logger(__name__)

router = APIRouter()

# identity lookups change rarely but handles can be renamed
MINI_DOC_TTL_SECONDS = 60


def get_cookie_jar(request: Request) -> CookieJar:
    jar = getattr(request.state, "cookie_jar", None)
    if jar is None:
        jar = CookieJar.from_request(request, get_runtime().settings)
        request.state.cookie_jar = jar
    return jar


def require_session_password() -> None:
    if not get_runtime().settings.session_password:
        raise ConfigurationError(UNSET_SESSION_PASSWORD)


def get_fetch_cache() -> FetchCache:
    return get_runtime().fetch_cache


async def get_oauth_session(
    cookies: CookieJar = Depends(get_cookie_jar),
) -> Optional[OAuthSession]:
    """Live OAuth session for the request, or ``None`` for anonymous users."""
    restorer = get_runtime().session_restorer(cookies)
    if restorer is None:
        return None
    return await restorer.current()


async def _resolve_mini_doc(fetch_cache: FetchCache, did: str) -> UserSession:
    url = (
        f"https://{SLINGSHOT_HOST}/xrpc/com.bad-example.identity.resolveMiniDoc"
        f"?identifier={quote(did, safe='')}"
    )
    try:
        result = await fetch_cache.cached_fetch(url, ttl=MINI_DOC_TTL_SECONDS)
        return UserSession.model_validate(result.data)
    except ValidationError as exc:
        raise UpstreamFetchError("identity document is malformed", url=url) from exc


@router.get("/api/auth/atproto", dependencies=[Depends(require_session_password)])
async def atproto_auth(
    request: Request,
    cookies: CookieJar = Depends(get_cookie_jar),
    fetch_cache: FetchCache = Depends(get_fetch_cache),
):
    """Start a login (``?handle=``) or complete one (provider callback with ``?code=``)."""
    runtime = get_runtime()
    params: Dict[str, str] = dict(request.query_params)
    state_store, session_store = runtime.oauth_storage(cookies)
    client = runtime.oauth_client(state_store, session_store)

    if not params.get("code"):
        handle = (params.get("handle") or "").strip()
        if not handle:
            raise BadRequestError("Handle not provided in query")
        prompt = "create" if params.get("create") else None
        redirect_url = await client.authorize(handle, scope=OAUTH_SCOPE, prompt=prompt)
        logger.info("oauth_authorize_started", handle=handle, prompt=prompt)
        return cookies.apply(RedirectResponse(str(redirect_url), status_code=302))

    try:
        oauth_session, _state = await client.callback(params)
    except TokenError as exc:
        await state_store.del_()
        logger.warning("oauth_callback_rejected", reason=type(exc).__name__)
        raise AuthenticationError("authorization could not be completed") from exc

    try:
        mini_doc = await _resolve_mini_doc(fetch_cache, oauth_session.did)
    except UpstreamFetchError:
        # the client already stored the session; nothing will reference it
        await session_store.del_()
        raise
    request.session.update(mini_doc.model_dump())
    logger.info("oauth_login_completed", did=mini_doc.did, handle=mini_doc.handle)
    return cookies.apply(RedirectResponse("/", status_code=302))


@router.get("/api/auth/session", dependencies=[Depends(require_session_password)])
async def read_session(
    request: Request,
    response: Response,
    cookies: CookieJar = Depends(get_cookie_jar),
    oauth_session: Optional[OAuthSession] = Depends(get_oauth_session),
) -> Optional[Dict[str, Any]]:
    cookies.apply(response)
    try:
        return UserSession.model_validate(dict(request.session)).model_dump()
    except ValidationError:
        return None


@router.delete("/api/auth/session", dependencies=[Depends(require_session_password)])
async def delete_session(
    request: Request,
    response: Response,
    cookies: CookieJar = Depends(get_cookie_jar),
    oauth_session: Optional[OAuthSession] = Depends(get_oauth_session),
) -> str:
    if oauth_session is not None:
        try:
            await oauth_session.sign_out()
        except TokenError as exc:
            logger.info("oauth_sign_out_rejected", reason=type(exc).__name__)
    _state_store, session_store = get_runtime().oauth_storage(cookies)
    await session_store.del_()
    request.session.clear()
    cookies.apply(response)
    return "Session cleared"


@router.get("/oauth-client-metadata.json")
async def oauth_client_metadata() -> Dict[str, Any]:
    return get_runtime().client_metadata.model_dump()


@router.get("/health", response_model=HealthCheck)
async def health(response: Response) -> HealthCheck:
    runtime = get_runtime()
    lock_kind = "distributed" if isinstance(runtime.request_lock, DistributedLock) else "local"
    try:
        await asyncio.to_thread(runtime.store.verify_connection)
    except Exception as exc:
        # anonymous browsing keeps working; report rather than fail
        logger.warning("health_kv_unreachable", error=str(exc))
        response.status_code = 503
        return HealthCheck(
            status="degraded",
            kv_backend=runtime.storage_config.backend.value,
            lock=lock_kind,
            detail=type(exc).__name__,
        )
    return HealthCheck(
        status="healthy", kv_backend=runtime.storage_config.backend.value, lock=lock_kind
    )
