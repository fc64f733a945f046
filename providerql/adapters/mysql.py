from __future__ import annotations
from .base import BaseAdapter, Capabilities


class MySQLAdapter(BaseAdapter):
    name = 'mysql'
    # No RETURNING: writes are followed by a re-fetch
    capabilities = Capabilities(returning=False, insertmanyvalues=False)
    binary_collation = 'utf8mb4_bin'

    def case_sensitive_match(self, col, kind: str, value: str):
        return getattr(col.collate(self.binary_collation), kind)(value, autoescape=True)

    # first_insert_id: LAST_INSERT_ID() is the id of the first row of a multi-row INSERT
