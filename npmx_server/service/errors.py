from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP ``status_code`` and a stable
    ``error_code``:
    - validation_error (400)
    - unauthorized (401)
    - server_error (500)
    - upstream_error (502)
    - service_unavailable (503)
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class BadRequestError(ServiceError):
    """Request is malformed or missing parameters (400)."""
    status_code = 400
    error_code = "validation_error"


class DisallowedDomainError(ServiceError):
    """Fetch target host is not on the cache allow-list (400).

    Raised before any network call is attempted.
    """
    status_code = 400
    error_code = "validation_error"


class AuthenticationError(ServiceError):
    """OAuth flow could not be completed (401)."""
    status_code = 401
    error_code = "unauthorized"


class ConfigurationError(ServiceError):
    """Required server configuration is missing (500). Never retried."""
    status_code = 500
    error_code = "server_error"


class UpstreamFetchError(ServiceError):
    """An outbound metadata fetch failed (502)."""
    status_code = 502
    error_code = "upstream_error"

    def __init__(
        self, message: str, *, upstream_status: Optional[int] = None, url: str = ""
    ) -> None:
        super().__init__(message, detail={"upstream_status": upstream_status, "url": url})
        self.upstream_status = upstream_status
        self.url = url


class TokenError(Exception):
    """Base for token failures raised by the OAuth client.

    These never surface to users; they mean "no session".
    """


class TokenRefreshError(TokenError):
    """The identity provider rejected a refresh."""


class TokenInvalidError(TokenError):
    """Stored token material is unusable."""


class TokenRevokedError(TokenError):
    """The session was revoked at the provider."""


__all__ = [
    "ServiceError",
    "BadRequestError",
    "DisallowedDomainError",
    "AuthenticationError",
    "ConfigurationError",
    "UpstreamFetchError",
    "TokenError",
    "TokenRefreshError",
    "TokenInvalidError",
    "TokenRevokedError",
]
