from __future__ import annotations

from typing import Any, Dict, Optional


class StorageError(Exception):
    """Base class for key-value storage failures."""

    retryable: bool = False

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class StorageUnavailableError(StorageError):
    """The backing store could not be reached or timed out.

    Absence of a key is never reported this way; callers get ``None``.
    """

    retryable = True


__all__ = ["StorageError", "StorageUnavailableError"]
