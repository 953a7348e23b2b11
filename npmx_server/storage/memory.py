from __future__ import annotations

import threading
import time
from typing import Any, Callable, Dict, Optional, Tuple

from npmx_server.logging import get_logger
from npmx_server.storage.kv import decode_value, encode_value, storage_key


class MemoryKVStore:
    """Process-local key-value store for single-instance deployments.

    Entries are kept as encoded JSON so readers never share mutable objects
    with writers. Expiry is checked lazily on access against ``clock``.
    """

    def __init__(self, *, clock: Callable[[], float] = time.monotonic) -> None:
        self.logger = get_logger(__name__)
        self._clock = clock
        self._entries: Dict[str, Tuple[str, Optional[float]]] = {}
        self._lock = threading.Lock()

    def _live(self, full_key: str) -> Optional[str]:
        entry = self._entries.get(full_key)
        if entry is None:
            return None
        raw, expires_at = entry
        if expires_at is not None and self._clock() >= expires_at:
            self._entries.pop(full_key, None)
            return None
        return raw

    def _expiry(self, ttl: Optional[int]) -> Optional[float]:
        if ttl is None:
            return None
        return self._clock() + max(1, int(ttl))

    async def get(self, namespace: str, key: str) -> Optional[Any]:
        full_key = storage_key(namespace, key)
        with self._lock:
            raw = self._live(full_key)
        return decode_value(raw, key=full_key)

    async def set(
        self, namespace: str, key: str, value: Any, ttl: Optional[int] = None
    ) -> None:
        full_key = storage_key(namespace, key)
        raw = encode_value(value)
        with self._lock:
            self._entries[full_key] = (raw, self._expiry(ttl))

    async def delete(self, namespace: str, key: str) -> None:
        with self._lock:
            self._entries.pop(storage_key(namespace, key), None)

    async def set_if_absent(
        self, namespace: str, key: str, value: Any, ttl: int
    ) -> bool:
        full_key = storage_key(namespace, key)
        raw = encode_value(value)
        with self._lock:
            if self._live(full_key) is not None:
                return False
            self._entries[full_key] = (raw, self._expiry(ttl))
            return True

    async def delete_if_equals(self, namespace: str, key: str, expected: Any) -> bool:
        full_key = storage_key(namespace, key)
        with self._lock:
            raw = self._live(full_key)
            if raw is None or decode_value(raw, key=full_key) != expected:
                return False
            self._entries.pop(full_key, None)
            return True

    def keys(self, namespace: Optional[str] = None) -> list[str]:
        """Live storage keys, optionally limited to one namespace."""
        prefix = f"{namespace}:" if namespace else ""
        with self._lock:
            return [k for k in list(self._entries) if k.startswith(prefix) and self._live(k)]

    def verify_connection(self) -> None:
        return None

    async def close(self) -> None:
        with self._lock:
            self._entries.clear()
