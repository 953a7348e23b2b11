from __future__ import annotations

import os
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from npmx_server.logging import get_logger

logger = get_logger(__name__)


# microcosm services for atproto identity data
CONSTELLATION_HOST = "constellation.microcosm.blue"
SLINGSHOT_HOST = "slingshot.microcosm.blue"

# Domains whose responses may be cached by the fetch cache.
DEFAULT_FETCH_CACHE_ALLOWED_DOMAINS: tuple[str, ...] = (
    # npm registry
    "registry.npmjs.org",
    "api.npmjs.org",
    # JSR registry
    "jsr.io",
    # git hosting providers (repo metadata)
    "ungh.cc",
    "api.github.com",
    "gitlab.com",
    "api.bitbucket.org",
    "codeberg.org",
    "gitee.com",
    CONSTELLATION_HOST,
    SLINGSHOT_HOST,
)

UNSET_SESSION_PASSWORD = "SESSION_PASSWORD not set"


class KVBackend(str, Enum):
    """Key-value storage backends."""

    MEMORY = "memory"
    REDIS = "redis"


class DisallowedDomainPolicy(str, Enum):
    """What the fetch cache does with hosts outside the allow-list.

    - BYPASS: fetch directly, never read or write the cache
    - REJECT: raise before any network call is made
    """

    BYPASS = "bypass"
    REJECT = "reject"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the auth session core."""

    dev_mode: bool = env_field(
        False,
        "NPMX_DEV",
        description="Local development; disables secure cookies and the distributed lock",
    )
    test_mode: bool = env_field(False, "TEST_MODE")
    app_base_url: str = env_field("https://npmx.dev", "APP_BASE_URL")
    dev_base_url: str = env_field("http://127.0.0.1:3000", "DEV_BASE_URL")
    session_password: Optional[str] = env_field(None, "SESSION_PASSWORD")
    session_cookie_name: str = env_field("npmx-session", "SESSION_COOKIE_NAME")

    kv_backend: KVBackend = env_field(KVBackend.MEMORY, "KV_BACKEND")
    redis_url: Optional[str] = env_field(None, "REDIS_URL")
    allow_kv_fallback_dev: bool = env_field(False, "ALLOW_KV_FALLBACK_DEV")
    redis_socket_timeout: float = env_field(5.0, "REDIS_SOCKET_TIMEOUT")

    lock_ttl_seconds: int = env_field(30, "OAUTH_LOCK_TTL_SECONDS")
    lock_retry_delay_ms: int = env_field(100, "OAUTH_LOCK_RETRY_DELAY_MS")
    oauth_state_ttl_seconds: Optional[int] = env_field(3600, "OAUTH_STATE_TTL_SECONDS")
    oauth_session_ttl_seconds: Optional[int] = env_field(
        None, "OAUTH_SESSION_TTL_SECONDS"
    )

    fetch_cache_default_ttl: int = env_field(60 * 5, "FETCH_CACHE_DEFAULT_TTL")
    fetch_cache_version: str = env_field("v1", "FETCH_CACHE_VERSION")
    fetch_cache_allowed_domains: list[str] = env_field(
        list(DEFAULT_FETCH_CACHE_ALLOWED_DOMAINS), "FETCH_CACHE_ALLOWED_DOMAINS"
    )
    fetch_cache_disallowed_policy: DisallowedDomainPolicy = env_field(
        DisallowedDomainPolicy.BYPASS, "FETCH_CACHE_DISALLOWED_POLICY"
    )
    fetch_timeout_seconds: float = env_field(10.0, "FETCH_TIMEOUT_SECONDS")
    fetch_user_agent: str = env_field("npmx", "FETCH_USER_AGENT")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator("kv_backend")
    @classmethod
    def _validate_backend(cls, value: KVBackend) -> KVBackend:
        return KVBackend(value)

    @field_validator("fetch_cache_allowed_domains", mode="before")
    @classmethod
    def _split_domains(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [part.strip().lower() for part in value.split(",") if part.strip()]
        return value

    @field_validator("oauth_state_ttl_seconds", "oauth_session_ttl_seconds", mode="before")
    @classmethod
    def _empty_ttl(cls, value: Any) -> Any:
        # "" or "0" in the environment means no expiry
        if value in ("", "0", 0):
            return None
        return value

    @field_validator("lock_ttl_seconds")
    @classmethod
    def _positive_lock_ttl(cls, value: int) -> int:
        if value < 1:
            raise ValueError("lock TTL must be at least one second")
        return value

    @property
    def client_base_url(self) -> str:
        return self.dev_base_url if self.dev_mode else self.app_base_url


@dataclass(frozen=True)
class StorageConfig:
    """Storage backend choice, resolved once at startup and injected."""

    backend: KVBackend
    redis_url: Optional[str] = None
    socket_timeout: float = 5.0

    @property
    def distributed(self) -> bool:
        return self.backend is KVBackend.REDIS

    @classmethod
    def from_settings(cls, settings: Settings) -> "StorageConfig":
        if settings.kv_backend is KVBackend.REDIS and not settings.redis_url:
            logger.warning("kv_backend_redis_without_url", fallback="memory")
            return cls(backend=KVBackend.MEMORY)
        if settings.kv_backend is KVBackend.REDIS and settings.dev_mode:
            # a single dev server never needs cross-instance coordination
            return cls(backend=KVBackend.MEMORY)
        return cls(
            backend=settings.kv_backend,
            redis_url=settings.redis_url,
            socket_timeout=settings.redis_socket_timeout,
        )


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
