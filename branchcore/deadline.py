"""Ambient per-request deadline shared by store backends.

Request handlers open ``request_deadline(seconds)`` once; every store call made
inside it (in the same thread or asyncio task) checks the remaining budget and
the Postgres backend turns it into a transaction-local statement timeout.
"""

from __future__ import annotations

import contextlib
import time
from contextvars import ContextVar
from typing import Iterator, Optional

from branchcore.storage.errors import StoreTimeout

_deadline_var: ContextVar[Optional[float]] = ContextVar("request_deadline", default=None)


@contextlib.contextmanager
def request_deadline(timeout_seconds: float) -> Iterator[float]:
    """Bound every store call in this context to ``timeout_seconds`` from now.

    Nested deadlines never extend an outer one.
    """
    if timeout_seconds <= 0:
        raise ValueError("timeout_seconds must be positive")
    expires = time.monotonic() + timeout_seconds
    outer = _deadline_var.get()
    if outer is not None:
        expires = min(expires, outer)
    token = _deadline_var.set(expires)
    try:
        yield expires
    finally:
        _deadline_var.reset(token)


def remaining_seconds() -> Optional[float]:
    """Seconds left before the ambient deadline, or None when unbounded."""
    expires = _deadline_var.get()
    if expires is None:
        return None
    return expires - time.monotonic()


def check_deadline(operation: str) -> Optional[float]:
    """Raise StoreTimeout if the ambient deadline already passed."""
    remaining = remaining_seconds()
    if remaining is not None and remaining <= 0:
        raise StoreTimeout("request deadline exceeded", operation=operation)
    return remaining
