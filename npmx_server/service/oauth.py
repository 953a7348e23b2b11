"""Contract of the external atproto OAuth client and our client metadata.

The client owns every cryptographic step (PAR, DPoP proofs, token exchange
and refresh). This module only describes what it is given and what it
returns.
"""

from __future__ import annotations

from typing import Any, Mapping, Optional, Protocol, Tuple
from urllib.parse import quote

from pydantic import BaseModel, Field, HttpUrl, TypeAdapter, field_validator

from npmx_server.config import Settings
from npmx_server.service.lock import RequestLock
from npmx_server.service.oauth_stores import OAuthSessionStore, OAuthStateStore

# atproto only grants login today; narrower scopes land with the features that need them
OAUTH_SCOPE = "atproto"


_URL = TypeAdapter(HttpUrl)


def _url(value: str) -> str:
    # validate but keep the exact string; loopback client ids must not be normalized
    _URL.validate_python(value)
    return value


class OAuthClientMetadata(BaseModel):
    client_id: str
    client_name: str
    client_uri: str
    redirect_uris: list[str] = Field(..., min_length=1)
    scope: str
    grant_types: list[str]
    application_type: str
    token_endpoint_auth_method: str
    dpop_bound_access_tokens: bool

    @field_validator("client_id", "client_uri")
    @classmethod
    def _validate_url(cls, value: str) -> str:
        return _url(value)


class UserSession(BaseModel):
    """Identity summary kept in the signed server session."""

    did: str
    handle: str
    pds: str

    @field_validator("pds")
    @classmethod
    def _validate_pds(cls, value: str) -> str:
        return _url(value)


def get_oauth_client_metadata(settings: Settings) -> OAuthClientMetadata:
    client_uri = settings.client_base_url.rstrip("/")
    redirect_uri = f"{client_uri}/api/auth/atproto"
    if settings.dev_mode:
        # loopback clients describe themselves in the client_id itself
        client_id = (
            f"http://localhost?redirect_uri={quote(redirect_uri, safe='')}"
            f"&scope={quote(OAUTH_SCOPE, safe='')}"
        )
    else:
        client_id = f"{client_uri}/oauth-client-metadata.json"
    return OAuthClientMetadata(
        client_name="npmx.dev",
        client_id=client_id,
        client_uri=client_uri,
        scope=OAUTH_SCOPE,
        redirect_uris=[redirect_uri],
        grant_types=["authorization_code", "refresh_token"],
        application_type="web",
        token_endpoint_auth_method="none",
        dpop_bound_access_tokens=True,
    )


class OAuthSession(Protocol):
    did: str

    async def sign_out(self) -> None: ...


class OAuthClient(Protocol):
    async def authorize(
        self, handle: str, *, scope: str, prompt: Optional[str] = None
    ) -> str: ...

    async def callback(self, params: Mapping[str, str]) -> Tuple[OAuthSession, Any]: ...

    async def restore(self, sub: str, refresh: Any = "auto") -> OAuthSession:
        """Rebuild a session for ``sub``; raises ``TokenError`` when unusable."""
        ...


class OAuthClientFactory(Protocol):
    def __call__(
        self,
        *,
        state_store: OAuthStateStore,
        session_store: OAuthSessionStore,
        client_metadata: OAuthClientMetadata,
        request_lock: Optional[RequestLock],
    ) -> OAuthClient: ...


__all__ = [
    "OAUTH_SCOPE",
    "OAuthClientMetadata",
    "UserSession",
    "OAuthSession",
    "OAuthClient",
    "OAuthClientFactory",
    "get_oauth_client_metadata",
]
