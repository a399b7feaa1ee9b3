from __future__ import annotations

from typing import Any, Dict, Optional


class StoreError(Exception):
    """Raised when the backing store fails (timeouts, connectivity, driver errors)."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class ConstraintViolation(StoreError):
    """Raised when a storage-layer uniqueness constraint is violated."""


class TransactionFailed(StoreError):
    """Raised when an atomic batch is rejected; none of its operations were applied."""


__all__ = ["StoreError", "ConstraintViolation", "TransactionFailed"]
