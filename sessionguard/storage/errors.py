from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """Raised when a storage-layer uniqueness or FK constraint is violated."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class StorageUnavailable(Exception):
    """The persistent store could not be reached or failed mid-operation."""


class CacheUnavailable(Exception):
    """The session cache could not be reached; callers degrade to the store."""


__all__ = ["ConstraintViolation", "StorageUnavailable", "CacheUnavailable"]
