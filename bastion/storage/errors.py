from __future__ import annotations

from typing import Any, Dict, Iterable, Optional


class ConstraintViolation(Exception):
    """A unique email or a user foreign key was violated on write."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class SchemaMissing(RuntimeError):
    """The database lacks tables the auth core reads and writes."""

    def __init__(self, tables: Iterable[str]):
        self.tables = sorted(tables)
        super().__init__(
            "Missing required Postgres tables: {}. Apply scripts/schema.sql first.".format(
                ", ".join(self.tables)
            )
        )


__all__ = ["ConstraintViolation", "SchemaMissing"]
