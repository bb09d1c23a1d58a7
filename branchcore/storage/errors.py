from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """Raised when a storage-layer uniqueness constraint is violated."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class StoreUnavailable(Exception):
    """The backing store could not serve the request (connection, pool, server).

    Infrastructure failure, never an authentication outcome; callers may retry
    with backoff.
    """

    def __init__(self, message: str, *, operation: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.operation = operation


class StoreTimeout(StoreUnavailable):
    """The request deadline elapsed before the store answered."""


__all__ = ["ConstraintViolation", "StoreUnavailable", "StoreTimeout"]
