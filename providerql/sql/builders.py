"""Single-table statement assembly and write execution.

``QueryBuilder`` turns compiled filters, sorters and pagination into
SELECT/INSERT/UPDATE/DELETE statements for one table. ``WriteExecutor``
runs writes through a :class:`~providerql.connection.Database`, chunking
batches and, on backends without RETURNING, re-fetching affected rows so
both paths return the same records.
"""
from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

from sqlalchemy import delete, func, insert, select, update

from ..core.filters import FilterCompiler
from ..core.schema import TableDescriptor
from ..core.sorting import apply_limit_offset, compile_sort
from ..errors import QueryError, RecordNotFoundError, ValidationError

logger = logging.getLogger(__name__)

AGGREGATES = {
    'count': func.count,
    'sum': func.sum,
    'avg': func.avg,
    'min': func.min,
    'max': func.max,
}


def chunked(items: Sequence[Any], size: int) -> Iterable[Sequence[Any]]:
    for i in range(0, len(items), size):
        yield items[i:i + size]


def _key(v: Any) -> str:
    return str(v)


def order_by_ids(records: List[Dict[str, Any]], ids: Sequence[Any], pk: str) -> List[Dict[str, Any]]:
    """Reorder records to follow ``ids``; ids without a record are skipped."""
    by_id = {_key(r.get(pk)): r for r in records}
    out: List[Dict[str, Any]] = []
    seen = set()
    for i in ids:
        k = _key(i)
        if k in seen:
            continue
        seen.add(k)
        rec = by_id.get(k)
        if rec is not None:
            out.append(rec)
    return out


class QueryBuilder:
    def __init__(self, table: TableDescriptor, compiler: FilterCompiler):
        self.td = table
        self.compiler = compiler

    @property
    def table(self):
        return self.td.table

    def where(self, filters: Any = None, extra: Optional[List[Any]] = None):
        clauses: List[Any] = []
        compiled = self.compiler.compile(self.td, filters) if filters else None
        if compiled is not None:
            clauses.append(compiled)
        clauses.extend(c for c in (extra or []) if c is not None)
        return clauses

    def columns(self, fields: Optional[Sequence[str]] = None) -> List[Any]:
        if not fields:
            return list(self.table.columns)
        return [self.td.require(f).column for f in fields]

    def select(
        self,
        filters: Any = None,
        sorters: Any = None,
        pagination: Any = None,
        fields: Optional[Sequence[str]] = None,
        extra_where: Optional[List[Any]] = None,
        group_by: Optional[Sequence[str]] = None,
        having: Optional[List[Any]] = None,
        aggregates: Optional[Mapping[str, Any]] = None,
        distinct: bool = False,
    ):
        """Build a SELECT; with ``group_by`` and no ``fields`` the grouped columns are selected."""
        group_cols = [self.td.require(f).column for f in group_by or ()]
        cols = self.columns(fields) if fields or not group_cols else list(group_cols)
        cols.extend(expr.label(alias) for alias, expr in (aggregates or {}).items())
        stmt = select(*cols)
        if aggregates and not group_cols:
            stmt = stmt.select_from(self.table)
        for clause in self.where(filters, extra_where):
            stmt = stmt.where(clause)
        if group_cols:
            stmt = stmt.group_by(*group_cols)
        for clause in having or ():
            stmt = stmt.having(clause)
        if distinct:
            stmt = stmt.distinct()
        order = compile_sort(self.td, sorters) if sorters else []
        if order:
            stmt = stmt.order_by(*order)
        if pagination is not None:
            stmt = apply_limit_offset(stmt, pagination)
        return stmt

    def count_rows(self, stmt):
        """COUNT(*) over the rows ``stmt`` returns, ignoring its ordering and slicing."""
        inner = stmt.order_by(None).limit(None).offset(None).subquery()
        return select(func.count()).select_from(inner)

    def count(self, filters: Any = None, extra_where: Optional[List[Any]] = None):
        stmt = select(func.count()).select_from(self.table)
        for clause in self.where(filters, extra_where):
            stmt = stmt.where(clause)
        return stmt

    def aggregate_expr(self, fn: str, field: Optional[str] = None):
        agg = AGGREGATES.get(fn)
        if agg is None:
            raise ValidationError(f"Unknown aggregate '{fn}'", value=fn)
        if field is None or field == '*':
            if fn != 'count':
                raise ValidationError(f"Aggregate '{fn}' requires a field", value=fn)
            return agg()
        return agg(self.td.require(field).column)

    def aggregate(self, fn: str, field: str, filters: Any = None, extra_where: Optional[List[Any]] = None):
        stmt = select(self.aggregate_expr(fn, field)).select_from(self.table)
        for clause in self.where(filters, extra_where):
            stmt = stmt.where(clause)
        return stmt

    def by_ids(self, ids: Sequence[Any]):
        pk = self.td.require_pk().column
        return select(*self.table.columns).where(pk.in_(list(ids)))

    def by_id(self, id: Any):
        pk = self.td.require_pk().column
        return select(*self.table.columns).where(pk == id)

    def by_id_range(self, first: int, count: int):
        pk = self.td.require_pk().column
        return select(*self.table.columns).where(pk.between(first, first + count - 1)).order_by(pk.asc())

    def insert(self, values: Optional[Mapping[str, Any]] = None, returning: bool = False):
        stmt = insert(self.table)
        if values is not None:
            stmt = stmt.values(dict(values))
        if returning:
            stmt = stmt.returning(*self.table.columns)
        return stmt

    def insert_many(self, rows: Sequence[Mapping[str, Any]]):
        return insert(self.table).values([dict(r) for r in rows])

    def insert_many_returning(self):
        # executemany form; rows come back in parameter order
        return insert(self.table).returning(*self.table.columns, sort_by_parameter_order=True)

    def update_ids(self, ids: Sequence[Any], values: Mapping[str, Any], returning: bool = False):
        pk = self.td.require_pk().column
        stmt = update(self.table).where(pk.in_(list(ids))).values(dict(values))
        if returning:
            stmt = stmt.returning(*self.table.columns)
        return stmt

    def update_id(self, id: Any, values: Mapping[str, Any], returning: bool = False):
        pk = self.td.require_pk().column
        stmt = update(self.table).where(pk == id).values(dict(values))
        if returning:
            stmt = stmt.returning(*self.table.columns)
        return stmt

    def delete_ids(self, ids: Sequence[Any], returning: bool = False):
        pk = self.td.require_pk().column
        stmt = delete(self.table).where(pk.in_(list(ids)))
        if returning:
            stmt = stmt.returning(*self.table.columns)
        return stmt

    def delete_id(self, id: Any, returning: bool = False):
        pk = self.td.require_pk().column
        stmt = delete(self.table).where(pk == id)
        if returning:
            stmt = stmt.returning(*self.table.columns)
        return stmt


class WriteExecutor:
    """Runs INSERT/UPDATE/DELETE for one table with chunking and returning fallback."""

    def __init__(self, db, builder: QueryBuilder, create_batch_size: int = 100, write_batch_size: int = 50):
        self.db = db
        self.qb = builder
        self.td = builder.td
        self.create_batch_size = create_batch_size
        self.write_batch_size = write_batch_size

    def _records(self, rows: Iterable[Any]) -> List[Dict[str, Any]]:
        return [self.td.to_record(r) for r in rows]

    @property
    def returning(self) -> bool:
        return self.db.supports_returning

    async def _fetch_one(self, db, id: Any) -> Optional[Dict[str, Any]]:
        rows = await db.fetch_all(self.qb.by_id(id))
        return self.td.to_record(rows[0]) if rows else None

    async def _fetch_ids(self, db, ids: Sequence[Any]) -> List[Dict[str, Any]]:
        if not ids:
            return []
        recs = self._records(await db.fetch_all(self.qb.by_ids(ids)))
        return order_by_ids(recs, ids, self.td.require_pk().key)

    # -- create ---------------------------------------------------------------
    async def create(self, data: Mapping[str, Any]) -> Dict[str, Any]:
        values = self.td.to_values(data)
        async with self.db.begin() as tx:
            return await self._create_one(tx, values)

    async def _create_one(self, tx, values: Dict[str, Any]) -> Dict[str, Any]:
        if self.returning:
            res = await tx.execute(self.qb.insert(values, returning=True))
            if not res.rows:
                raise QueryError(f"Insert into '{self.td.resource}' returned no rows", resource=self.td.resource)
            return self.td.to_record(res.rows[0])
        res = await tx.execute(self.qb.insert(values))
        pk = self.td.require_pk()
        new_id = values.get(pk.key)
        if new_id is None and res.inserted_primary_key:
            new_id = res.inserted_primary_key[0]
        if new_id is None:
            new_id = res.lastrowid
        rec = await self._fetch_one(tx, new_id) if new_id is not None else None
        if rec is None:
            raise QueryError(f"Insert into '{self.td.resource}' returned no rows", resource=self.td.resource)
        return rec

    async def create_many(self, data: Sequence[Mapping[str, Any]]) -> List[Dict[str, Any]]:
        if not data:
            return []
        rows = [self.td.to_values(d) for d in data]
        logger.debug("create_many %s: %d rows, batch size %d", self.td.resource, len(rows), self.create_batch_size)
        out: List[Dict[str, Any]] = []
        async with self.db.begin() as tx:
            for chunk in chunked(rows, self.create_batch_size):
                out.extend(await self._create_chunk(tx, list(chunk)))
        if len(out) != len(rows):
            raise QueryError(
                f"Batch insert into '{self.td.resource}' returned {len(out)} rows for {len(rows)} inputs",
                resource=self.td.resource,
            )
        return out

    async def _create_chunk(self, tx, rows: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        homogeneous = len({tuple(sorted(r.keys())) for r in rows}) == 1
        if not homogeneous or not rows[0]:
            return [await self._create_one(tx, r) for r in rows]
        if self.returning:
            if not self.db.adapter.capabilities.insertmanyvalues:
                return [await self._create_one(tx, r) for r in rows]
            res = await tx.execute(self.qb.insert_many_returning(), rows)
            return self._records(res.rows)
        res = await tx.execute(self.qb.insert_many(rows))
        pk = self.td.require_pk()
        explicit = [r.get(pk.key) for r in rows]
        if all(v is not None for v in explicit):
            return await self._fetch_ids(tx, explicit)
        first = self.db.adapter.first_insert_id(res, len(rows))
        if first is None:
            raise QueryError(
                f"Cannot determine ids inserted into '{self.td.resource}' without RETURNING",
                resource=self.td.resource,
            )
        return self._records(await tx.fetch_all(self.qb.by_id_range(first, len(rows))))

    # -- update ---------------------------------------------------------------
    async def update(self, id: Any, data: Mapping[str, Any]) -> Dict[str, Any]:
        values = self.td.to_values(data)
        if not values:
            raise ValidationError(f"No values to update on '{self.td.resource}'")
        async with self.db.begin() as tx:
            if self.returning:
                res = await tx.execute(self.qb.update_id(id, values, returning=True))
                if not res.rows:
                    raise RecordNotFoundError(self.td.resource, id)
                return self.td.to_record(res.rows[0])
            await tx.execute(self.qb.update_id(id, values))
            # rowcount is unreliable here (MySQL counts changed rows), so re-fetch
            rec = await self._fetch_one(tx, values.get(self.td.require_pk().key, id))
            if rec is None:
                raise RecordNotFoundError(self.td.resource, id)
            return rec

    async def update_many(self, ids: Sequence[Any], data: Mapping[str, Any]) -> List[Dict[str, Any]]:
        values = self.td.to_values(data)
        if not values:
            raise ValidationError(f"No values to update on '{self.td.resource}'")
        if not ids:
            return []
        pk_key = self.td.require_pk().key
        if pk_key in values:
            raise ValidationError(f"Cannot set primary key '{pk_key}' in a batch update", field=pk_key)
        out: List[Dict[str, Any]] = []
        async with self.db.begin() as tx:
            for chunk in chunked(list(ids), self.write_batch_size):
                if self.returning:
                    res = await tx.execute(self.qb.update_ids(chunk, values, returning=True))
                    out.extend(self._records(res.rows))
                else:
                    await tx.execute(self.qb.update_ids(chunk, values))
                    out.extend(await self._fetch_ids(tx, chunk))
        return order_by_ids(out, ids, pk_key)

    # -- delete ---------------------------------------------------------------
    async def delete(self, id: Any) -> Dict[str, Any]:
        async with self.db.begin() as tx:
            if self.returning:
                res = await tx.execute(self.qb.delete_id(id, returning=True))
                if not res.rows:
                    raise RecordNotFoundError(self.td.resource, id)
                return self.td.to_record(res.rows[0])
            rec = await self._fetch_one(tx, id)
            if rec is None:
                raise RecordNotFoundError(self.td.resource, id)
            await tx.execute(self.qb.delete_id(id))
            return rec

    async def delete_many(self, ids: Sequence[Any]) -> List[Dict[str, Any]]:
        if not ids:
            return []
        out: List[Dict[str, Any]] = []
        async with self.db.begin() as tx:
            for chunk in chunked(list(ids), self.write_batch_size):
                if self.returning:
                    res = await tx.execute(self.qb.delete_ids(chunk, returning=True))
                    out.extend(self._records(res.rows))
                else:
                    out.extend(await self._fetch_ids(tx, chunk))
                    await tx.execute(self.qb.delete_ids(chunk))
        return order_by_ids(out, ids, self.td.require_pk().key)


__all__ = ['QueryBuilder', 'WriteExecutor', 'chunked', 'order_by_ids', 'AGGREGATES']
