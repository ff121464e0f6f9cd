from __future__ import annotations

from typing import Any, Dict, Optional


class StoreError(Exception):
    """Base class for failures raised by credential and cache backends."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class ConstraintViolation(StoreError):
    """Raised when a uniqueness constraint on principal records is violated."""


class BackendUnavailable(StoreError):
    """Raised when the backing store cannot be reached or answered badly."""


__all__ = ["StoreError", "ConstraintViolation", "BackendUnavailable"]
