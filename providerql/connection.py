"""Async connection wrapper used by every provider operation.

``Database`` wraps either an ``AsyncEngine`` (each call checks out its own
pooled connection, writes commit per call) or an ``AsyncConnection`` inside a
transaction (every statement runs on that connection, one at a time).
"""
from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, List, Mapping, Optional, Sequence, Union

from sqlalchemy import text
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine, create_async_engine

from .adapters import BaseAdapter, get_adapter
from .errors import ConfigurationError, ConstraintViolationError, QueryError

logger = logging.getLogger(__name__)


@dataclass
class ExecResult:
    """Buffered outcome of a write statement."""

    rows: List[Any] = field(default_factory=list)
    rowcount: int = -1
    lastrowid: Optional[int] = None
    inserted_primary_key: Optional[Sequence[Any]] = None


def _statement_text(stmt: Any) -> Optional[str]:
    try:
        return str(stmt)
    except Exception:
        return None


def wrap_db_error(e: SQLAlchemyError, stmt: Any = None, params: Any = None) -> QueryError:
    statement = getattr(e, 'statement', None) or _statement_text(stmt)
    orig = getattr(e, 'orig', None) or e
    if isinstance(e, IntegrityError):
        return ConstraintViolationError(f"Constraint violation: {orig}", statement=statement, params=params, cause=e)
    return QueryError(f"Query failed: {orig}", statement=statement, params=params, cause=e)


class Database:
    def __init__(
        self,
        bind: Union[AsyncEngine, AsyncConnection],
        adapter: Optional[BaseAdapter] = None,
        supports_returning: Optional[bool] = None,
    ):
        if isinstance(bind, AsyncEngine):
            self._engine: Optional[AsyncEngine] = bind
            self._conn: Optional[AsyncConnection] = None
        elif isinstance(bind, AsyncConnection):
            self._engine = None
            self._conn = bind
        else:
            raise ConfigurationError(f"Expected an AsyncEngine or AsyncConnection, got {type(bind).__name__}")
        self.adapter = adapter or get_adapter(bind.dialect.name)
        self._returning_override = supports_returning
        # one statement at a time on a shared connection
        self._lock = asyncio.Lock()

    @classmethod
    def from_url(cls, url: str, *, echo: bool = False, supports_returning: Optional[bool] = None, **engine_kw: Any) -> "Database":
        return cls(create_async_engine(url, echo=echo, **engine_kw), supports_returning=supports_returning)

    @property
    def engine(self) -> Optional[AsyncEngine]:
        return self._engine

    @property
    def in_transaction(self) -> bool:
        return self._conn is not None

    @property
    def dialect_name(self) -> str:
        bind = self._engine if self._engine is not None else self._conn
        return bind.dialect.name  # type: ignore[union-attr]

    @property
    def supports_returning(self) -> bool:
        if self._returning_override is not None:
            return self._returning_override
        return self.adapter.supports_returning()

    @asynccontextmanager
    async def _connection(self) -> AsyncIterator[AsyncConnection]:
        if self._conn is not None:
            async with self._lock:
                yield self._conn
        else:
            async with self._engine.connect() as conn:  # type: ignore[union-attr]
                yield conn

    @asynccontextmanager
    async def _write_connection(self) -> AsyncIterator[AsyncConnection]:
        if self._conn is not None:
            async with self._lock:
                yield self._conn
        else:
            async with self._engine.begin() as conn:  # type: ignore[union-attr]
                yield conn

    @asynccontextmanager
    async def begin(self) -> AsyncIterator["Database"]:
        """Run a block in one transaction; commits on success, rolls back on error.

        Inside an existing transaction this joins it.
        """
        if self._conn is not None:
            yield self
            return
        async with self._engine.begin() as conn:  # type: ignore[union-attr]
            yield Database(conn, adapter=self.adapter, supports_returning=self._returning_override)

    async def fetch_all(self, stmt: Any) -> List[Any]:
        logger.debug("fetch_all: %s", stmt)
        try:
            async with self._connection() as conn:
                result = await conn.execute(stmt)
                return list(result.fetchall())
        except SQLAlchemyError as e:
            raise wrap_db_error(e, stmt) from e

    async def fetch_scalar(self, stmt: Any) -> Any:
        logger.debug("fetch_scalar: %s", stmt)
        try:
            async with self._connection() as conn:
                result = await conn.execute(stmt)
                return result.scalar()
        except SQLAlchemyError as e:
            raise wrap_db_error(e, stmt) from e

    async def execute(self, stmt: Any, params: Optional[Union[Mapping[str, Any], Sequence[Mapping[str, Any]]]] = None) -> ExecResult:
        """Execute a write (single or executemany) and buffer its result."""
        logger.debug("execute: %s", stmt)
        try:
            async with self._write_connection() as conn:
                if params is None:
                    result = await conn.execute(stmt)
                else:
                    result = await conn.execute(stmt, params)
                rows = list(result.fetchall()) if result.returns_rows else []
                out = ExecResult(rows=rows, rowcount=result.rowcount)
                try:
                    out.lastrowid = result.lastrowid
                except (AttributeError, SQLAlchemyError):
                    out.lastrowid = None
                try:
                    out.inserted_primary_key = result.inserted_primary_key
                except (AttributeError, SQLAlchemyError):
                    out.inserted_primary_key = None
                return out
        except SQLAlchemyError as e:
            raise wrap_db_error(e, stmt, params) from e

    async def execute_raw(self, sql: str, params: Optional[Union[Mapping[str, Any], Sequence[Any]]] = None) -> List[Dict[str, Any]]:
        """Run raw SQL. Mapping params bind ``:name`` placeholders; sequences go to the driver as-is."""
        logger.debug("execute_raw: %s", sql)
        try:
            async with self._write_connection() as conn:
                if params is None or isinstance(params, Mapping):
                    result = await conn.execute(text(sql), dict(params or {}))
                else:
                    result = await conn.exec_driver_sql(sql, tuple(params))
                if not result.returns_rows:
                    return []
                return [dict(r._mapping) for r in result.fetchall()]
        except SQLAlchemyError as e:
            raise wrap_db_error(e, sql, params) from e

    async def dispose(self) -> None:
        if self._engine is not None:
            await self._engine.dispose()


__all__ = ['Database', 'ExecResult', 'wrap_db_error']
