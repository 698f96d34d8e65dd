from __future__ import annotations

from typing import Any, Dict, Optional


class StoreUnavailableError(Exception):
    """Raised when a backing store cannot be reached or fails mid-operation.

    This is an infrastructure fault and sits outside the ``ServiceError``
    hierarchy so callers never mistake it for an authentication outcome.
    """

    def __init__(
        self, message: str, *, backend: str = "unknown", detail: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message)
        self.message = message
        self.backend = backend
        self.detail = detail or {}


class StoreTimeoutError(StoreUnavailableError):
    """A store call exceeded the caller-supplied timeout."""


__all__ = ["StoreUnavailableError", "StoreTimeoutError"]
