from __future__ import annotations
from dataclasses import dataclass
from typing import Any, Optional
from sqlalchemy import not_


@dataclass(frozen=True)
class Capabilities:
    # INSERT/UPDATE/DELETE ... RETURNING
    returning: bool = True
    # executemany + RETURNING with deterministic row order
    insertmanyvalues: bool = True


class BaseAdapter:
    name = 'base'
    capabilities = Capabilities()

    def supports_returning(self) -> bool:
        return self.capabilities.returning

    # String pattern matching -------------------------------------------------
    def pattern_match(self, col, kind: str, value: Any, case_sensitive: bool, negate: bool = False):
        """Build a contains/startswith/endswith predicate; ``%`` and ``_`` in value are literal."""
        value = '' if value is None else str(value)
        if case_sensitive:
            expr = self.case_sensitive_match(col, kind, value)
        else:
            expr = getattr(col, 'i' + kind)(value, autoescape=True)
        return not_(expr) if negate else expr

    def case_sensitive_match(self, col, kind: str, value: str):
        # LIKE is case-sensitive on PostgreSQL; dialects where it is not override this
        return getattr(col, kind)(value, autoescape=True)

    # Two-step write support --------------------------------------------------
    def first_insert_id(self, result, count: int) -> Optional[int]:
        """Return the id of the first row of a multi-row INSERT without RETURNING."""
        rowid = getattr(result, 'lastrowid', None)
        if rowid is None:
            return None
        return int(rowid)
