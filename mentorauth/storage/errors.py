from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """A write broke an integrity rule of the user store.

    Both store backends raise these so callers never see driver exceptions.
    ``status_code``/``error_code`` say how the API layer reports it.
    """

    status_code = 409
    error_code = "conflict"

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}

    @property
    def field(self) -> Optional[str]:
        return self.detail.get("field")


class DuplicateRecord(ConstraintViolation):
    """Unique key already taken (registered email, live token for a device)."""


__all__ = ["ConstraintViolation", "DuplicateRecord"]
