from __future__ import annotations

from typing import Any, Dict, Optional

# Values carried in ConstraintViolation.detail["constraint"]
UNIQUE_NAME = "unique_name"
IDENTITY_LINKED = "identity_linked"
FOLDER_NOT_EMPTY = "folder_not_empty"
ACYCLIC = "acyclic"
DEPTH_EXCEEDED = "depth_exceeded"
PARENT_MISSING = "parent_missing"


class ConstraintViolation(Exception):
    """Raised when a storage-layer uniqueness, FK or tree constraint is violated."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}

    @property
    def constraint(self) -> Optional[str]:
        return self.detail.get("constraint")


__all__ = [
    "ConstraintViolation",
    "UNIQUE_NAME",
    "IDENTITY_LINKED",
    "FOLDER_NOT_EMPTY",
    "ACYCLIC",
    "DEPTH_EXCEEDED",
    "PARENT_MISSING",
]
