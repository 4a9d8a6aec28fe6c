from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """Raised when a storage-layer uniqueness or FK constraint is violated."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class TransientStorageError(Exception):
    """Serialization failure or deadlock; the whole unit of work may be retried."""

    def __init__(self, message: str, *, sqlstate: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.sqlstate = sqlstate


__all__ = ["ConstraintViolation", "TransientStorageError"]
