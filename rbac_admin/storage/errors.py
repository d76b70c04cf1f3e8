from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """A unique constraint rejected a write (duplicate username, role name...)."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}

    @property
    def field(self) -> Optional[str]:
        return self.detail.get("field")


class ReferenceViolation(ConstraintViolation):
    """A foreign key rejected a write, e.g. a role removed mid-transaction."""


__all__ = ["ConstraintViolation", "ReferenceViolation"]
