from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """Raised when a storage-layer uniqueness or FK constraint is violated."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class StoreTimeoutError(Exception):
    """A backing store did not answer within its statement/socket timeout."""

    def __init__(self, operation: str, backend: str = "store"):
        super().__init__(f"{backend} timed out during {operation}")
        self.operation = operation
        self.backend = backend


class StoreUnavailableError(Exception):
    """A backing store refused or dropped the connection."""

    def __init__(self, operation: str, backend: str = "store"):
        super().__init__(f"{backend} unavailable during {operation}")
        self.operation = operation
        self.backend = backend


__all__ = ["ConstraintViolation", "StoreTimeoutError", "StoreUnavailableError"]
