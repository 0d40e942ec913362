from __future__ import annotations

from typing import Any, Dict, Optional


class StorageError(Exception):
    """Base class for credential store failures."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class DuplicateKeyError(StorageError):
    """Raised when a create/save would break email or username uniqueness."""

    def __init__(self, field: str):
        super().__init__("Email or username already exists", {"field": field})
        self.field = field


class RecordNotFoundError(StorageError):
    """Raised when saving a record whose id the store does not hold."""


class StoreUnavailableError(StorageError):
    """Raised when the backing store cannot be reached."""


__all__ = [
    "StorageError",
    "DuplicateKeyError",
    "RecordNotFoundError",
    "StoreUnavailableError",
]
