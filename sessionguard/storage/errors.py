from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """Raised when a ledger uniqueness constraint rejects a write (e.g. username)."""

    def __init__(
        self,
        message: str,
        detail: Optional[Dict[str, Any]] = None,
        *,
        field: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        self.detail = dict(detail or {})
        if field:
            self.detail.setdefault("field", field)


class SchemaMissing(RuntimeError):
    """Ledger tables are absent; run ``scripts/bootstrap_user.py --init-schema``."""

    def __init__(self, tables: list[str]):
        super().__init__(
            "Missing required Postgres tables: {}".format(", ".join(sorted(tables)))
        )
        self.tables = sorted(tables)


__all__ = ["ConstraintViolation", "SchemaMissing"]
