from __future__ import annotations
from typing import Optional
from .base import BaseAdapter, Capabilities

_GLOB_SPECIAL = {'*': '[*]', '?': '[?]', '[': '[[]'}


def glob_escape(value: str) -> str:
    return ''.join(_GLOB_SPECIAL.get(ch, ch) for ch in value)


class SQLiteAdapter(BaseAdapter):
    name = 'sqlite'
    # RETURNING needs SQLite 3.35+, which every supported Python ships
    capabilities = Capabilities(returning=True, insertmanyvalues=True)

    def case_sensitive_match(self, col, kind: str, value: str):
        # SQLite LIKE ignores ASCII case; GLOB does not
        v = glob_escape(value)
        if kind == 'contains':
            pattern = f"*{v}*"
        elif kind == 'startswith':
            pattern = f"{v}*"
        else:
            pattern = f"*{v}"
        return col.op('GLOB')(pattern)

    def first_insert_id(self, result, count: int) -> Optional[int]:
        # lastrowid is the id of the last row of the multi-row INSERT
        rowid = getattr(result, 'lastrowid', None)
        if rowid is None:
            return None
        return int(rowid) - count + 1
