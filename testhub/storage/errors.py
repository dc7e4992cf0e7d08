from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """Raised when a uniqueness or foreign-key constraint rejects a write."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}

    @property
    def field(self) -> Optional[str]:
        return self.detail.get("field")


class SchemaMissingError(RuntimeError):
    """Raised at startup when the auth tables have not been migrated."""

    def __init__(self, missing: list[str]):
        super().__init__(
            "Missing required Postgres tables: {}. Apply sql/001_auth.sql first.".format(
                ", ".join(sorted(missing))
            )
        )
        self.missing = missing


__all__ = ["ConstraintViolation", "SchemaMissingError"]
