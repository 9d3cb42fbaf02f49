from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """Raised when a storage-layer uniqueness constraint is violated."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class StoreUnavailable(Exception):
    """Raised when the backing store cannot be reached or loaded."""

    def __init__(self, message: str, *, operation: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.operation = operation


__all__ = ["ConstraintViolation", "StoreUnavailable"]
