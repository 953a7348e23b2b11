"""Namespaced key-value storage contract shared by every backend.

Values are JSON-serializable objects. Each consumer owns one namespace and the
storage key is always ``<namespace>:<key>``, so namespaces cannot collide as
long as they are distinct strings without a trailing colon.
"""

from __future__ import annotations

import json
from typing import Any, Optional, Protocol

from npmx_server.logging import get_logger

logger = get_logger(__name__)


class KeyValueStore(Protocol):
    """Async namespaced get/set/delete store.

    ``set_if_absent`` and ``delete_if_equals`` must be atomic; the distributed
    lock depends on both.
    """

    async def get(self, namespace: str, key: str) -> Optional[Any]: ...

    async def set(
        self, namespace: str, key: str, value: Any, ttl: Optional[int] = None
    ) -> None: ...

    async def delete(self, namespace: str, key: str) -> None: ...

    async def set_if_absent(
        self, namespace: str, key: str, value: Any, ttl: int
    ) -> bool: ...

    async def delete_if_equals(self, namespace: str, key: str, expected: Any) -> bool: ...

    def verify_connection(self) -> None: ...

    async def close(self) -> None: ...


def storage_key(namespace: str, key: str) -> str:
    if not namespace:
        raise ValueError("namespace is required")
    return f"{namespace}:{key}"


def encode_value(value: Any) -> str:
    return json.dumps(value, separators=(",", ":"), sort_keys=True)


def decode_value(raw: Optional[str], *, key: str = "") -> Optional[Any]:
    """Decode a stored value; corrupted payloads read as absent."""
    if raw is None:
        return None
    try:
        return json.loads(raw)
    except (json.JSONDecodeError, TypeError):
        logger.warning("kv_value_corrupted", key=key)
        return None


__all__ = ["KeyValueStore", "storage_key", "encode_value", "decode_value"]
