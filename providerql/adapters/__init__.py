from __future__ import annotations

import logging

from .base import BaseAdapter, Capabilities
from .sqlite import SQLiteAdapter
from .postgres import PostgresAdapter
from .mysql import MySQLAdapter

logger = logging.getLogger(__name__)


def get_adapter(dialect_name: str) -> BaseAdapter:
    dn = (dialect_name or '').lower()
    if dn.startswith('postgres'):
        adapter: BaseAdapter = PostgresAdapter()
    elif dn.startswith(('mysql', 'mariadb')):
        adapter = MySQLAdapter()
    elif dn.startswith('sqlite') or not dn:
        adapter = SQLiteAdapter()
    else:
        logger.warning("no adapter for dialect %r; using generic defaults", dialect_name)
        adapter = BaseAdapter()
    logger.info("using %s adapter for dialect %r", adapter.name, dialect_name)
    return adapter


__all__ = [
    'BaseAdapter',
    'Capabilities',
    'SQLiteAdapter',
    'PostgresAdapter',
    'MySQLAdapter',
    'get_adapter',
]
