from __future__ import annotations
from .base import BaseAdapter, Capabilities


class PostgresAdapter(BaseAdapter):
    name = 'postgres'
    capabilities = Capabilities(returning=True, insertmanyvalues=True)

    def first_insert_id(self, result, count: int):
        # Always written with RETURNING; there is no portable last-insert id
        return None
