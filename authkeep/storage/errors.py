from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """Raised when a write breaks a uniqueness rule or loses a version race."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class StaleWriteError(ConstraintViolation):
    """The document changed between read and write; reload and retry."""


__all__ = ["ConstraintViolation", "StaleWriteError"]
