from __future__ import annotations

from typing import Any, Dict, Optional


class StoreError(Exception):
    """Base for credential-store failures; ``detail`` names the field or id involved."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = dict(detail or {})


class ConstraintViolation(StoreError):
    """A unique email, unique refresh token or user reference was violated."""


class RecordNotFound(StoreError):
    """An update or delete addressed a user that does not exist."""


__all__ = ["StoreError", "ConstraintViolation", "RecordNotFound"]
