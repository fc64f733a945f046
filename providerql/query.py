"""Fluent single-table query returned by ``DataProvider.from_``."""
from __future__ import annotations

import logging
import operator
from typing import Any, Dict, List, Mapping, Optional, Sequence

from sqlalchemy import text
from sqlalchemy.sql.elements import ClauseElement

from .core.filters import FieldFilter, FilterNode, is_unsatisfiable, parse_filters
from .core.schema import Schema
from .core.sorting import Pagination, Sorter, compile_sort, normalize_list_pagination, parse_sorters, strict_pagination
from .errors import SchemaError, ValidationError
from .morph import MorphConfig, MorphQuery
from .relations import RelationCache, Relationship, RelationshipLoader, infer_relationships
from .sql.builders import QueryBuilder

logger = logging.getLogger(__name__)

_COMPARE = {
    'eq': operator.eq,
    'ne': operator.ne,
    'gt': operator.gt,
    'gte': operator.ge,
    'lt': operator.lt,
    'lte': operator.le,
}


class ChainQuery:
    """Builder for filtered/sorted/paginated reads with relationship loading.

    Every chain method returns the same query object. ``first()`` runs on a
    copy and leaves the builder untouched.
    """

    def __init__(self, db, schema: Schema, compiler, loader: RelationshipLoader, resource: str):
        self.db = db
        self.schema = schema
        self.compiler = compiler
        self.loader = loader
        self.td = schema.require(resource)
        self._filters: List[FilterNode] = []
        self._raw: List[Any] = []
        self._sorters: List[Sorter] = []
        self._limit: Optional[int] = None
        self._offset: Optional[int] = None
        self._fields: Optional[List[str]] = None
        self._relations: Dict[str, Relationship] = {}
        self._morphs: List[MorphConfig] = []
        self._cache: Optional[RelationCache] = None
        self._group_by: List[str] = []
        self._having: List[Any] = []
        self._aggregates: Dict[str, Any] = {}
        self._distinct = False

    @property
    def resource(self) -> str:
        return self.td.resource

    def _clone(self) -> "ChainQuery":
        q = object.__new__(ChainQuery)
        q.__dict__.update(self.__dict__)
        q._filters = list(self._filters)
        q._raw = list(self._raw)
        q._sorters = list(self._sorters)
        q._fields = list(self._fields) if self._fields is not None else None
        q._relations = dict(self._relations)
        q._morphs = list(self._morphs)
        q._group_by = list(self._group_by)
        q._having = list(self._having)
        q._aggregates = dict(self._aggregates)
        return q

    # -- filtering ------------------------------------------------------------
    def where(self, field: str, operator: str, value: Any = None) -> "ChainQuery":
        self.td.require(field)
        self._filters.append(FieldFilter(field, operator, value))
        return self

    def where_eq(self, field: str, value: Any) -> "ChainQuery":
        return self.where(field, 'eq', value)

    def where_ne(self, field: str, value: Any) -> "ChainQuery":
        return self.where(field, 'ne', value)

    def where_gt(self, field: str, value: Any) -> "ChainQuery":
        return self.where(field, 'gt', value)

    def where_gte(self, field: str, value: Any) -> "ChainQuery":
        return self.where(field, 'gte', value)

    def where_lt(self, field: str, value: Any) -> "ChainQuery":
        return self.where(field, 'lt', value)

    def where_lte(self, field: str, value: Any) -> "ChainQuery":
        return self.where(field, 'lte', value)

    def where_like(self, field: str, value: str) -> "ChainQuery":
        return self.where(field, 'contains', value)

    def where_ilike(self, field: str, value: str) -> "ChainQuery":
        return self.where(field, 'containss', value)

    def where_in(self, field: str, values: Sequence[Any]) -> "ChainQuery":
        return self.where(field, 'in', list(values))

    def where_not_in(self, field: str, values: Sequence[Any]) -> "ChainQuery":
        return self.where(field, 'nin', list(values))

    def where_between(self, field: str, low: Any, high: Any) -> "ChainQuery":
        return self.where(field, 'between', [low, high])

    def where_null(self, field: str) -> "ChainQuery":
        return self.where(field, 'null')

    def where_not_null(self, field: str) -> "ChainQuery":
        return self.where(field, 'nnull')

    def where_raw(self, condition: Any) -> "ChainQuery":
        self._raw.append(_clause('where_raw', condition))
        return self

    def apply_filters(self, filters: Any) -> "ChainQuery":
        self._filters.extend(parse_filters(filters, self.compiler.max_depth))
        return self

    # -- ordering / slicing ---------------------------------------------------
    def order_by(self, field: str, direction: str = 'asc') -> "ChainQuery":
        sorter = Sorter(field, direction)
        compile_sort(self.td, [sorter])
        self._sorters.append(sorter)
        return self

    def order_by_asc(self, field: str) -> "ChainQuery":
        return self.order_by(field, 'asc')

    def order_by_desc(self, field: str) -> "ChainQuery":
        return self.order_by(field, 'desc')

    def apply_sorting(self, sorters: Any) -> "ChainQuery":
        parsed = parse_sorters(sorters)
        compile_sort(self.td, parsed)
        self._sorters.extend(parsed)
        return self

    def limit(self, n: int) -> "ChainQuery":
        self._limit = Pagination(limit=n).limit
        return self

    def offset(self, n: int) -> "ChainQuery":
        self._offset = Pagination(offset=n).offset
        return self

    def paginate(self, page: int, page_size: int = 10) -> "ChainQuery":
        lo = strict_pagination(page, page_size).to_limit_offset()
        self._limit, self._offset = lo['limit'], lo['offset']
        return self

    def apply_pagination(self, pagination: Any) -> "ChainQuery":
        lo = normalize_list_pagination(pagination).to_limit_offset()
        self._limit, self._offset = lo.get('limit'), lo.get('offset')
        return self

    def select(self, *fields: str) -> "ChainQuery":
        if len(fields) == 1 and isinstance(fields[0], (list, tuple)):
            fields = tuple(fields[0])
        for f in fields:
            self.td.require(f)
        self._fields = list(fields) or None
        return self

    # -- grouping -------------------------------------------------------------
    def distinct(self) -> "ChainQuery":
        self._distinct = True
        return self

    def group_by(self, *fields: str) -> "ChainQuery":
        """Group rows by ``fields``; unless ``select`` was called the grouped columns are returned."""
        if len(fields) == 1 and isinstance(fields[0], (list, tuple)):
            fields = tuple(fields[0])
        for f in fields:
            self.td.require(f)
        self._group_by.extend(fields)
        return self

    def having(self, condition: Any) -> "ChainQuery":
        self._having.append(_clause('having', condition))
        return self

    def _having_aggregate(self, fn: str, field: Optional[str], op: str, value: Any) -> "ChainQuery":
        compare = _COMPARE.get(op)
        if compare is None:
            raise ValidationError(f"Unsupported having comparison '{op}'", value=op)
        self._having.append(compare(self._builder().aggregate_expr(fn, field), value))
        return self

    def having_count(self, op: str, value: int) -> "ChainQuery":
        return self._having_aggregate('count', None, op, value)

    def having_sum(self, field: str, op: str, value: Any) -> "ChainQuery":
        return self._having_aggregate('sum', field, op, value)

    def having_avg(self, field: str, op: str, value: Any) -> "ChainQuery":
        return self._having_aggregate('avg', field, op, value)

    def with_aggregate(self, fn: str, field: Optional[str] = None, alias: Optional[str] = None) -> "ChainQuery":
        """Add ``fn(field)`` to the selected columns, labelled ``alias`` (default ``<fn>`` or ``<fn>_<field>``)."""
        expr = self._builder().aggregate_expr(fn, field)
        self._aggregates[alias or (fn if field in (None, '*') else f"{fn}_{field}")] = expr
        return self

    def with_count(self, alias: str = 'count') -> "ChainQuery":
        return self.with_aggregate('count', None, alias)

    # -- relationships --------------------------------------------------------
    def with_(self, relation: str, config: Any = None) -> "ChainQuery":
        if config is not None:
            return self.with_relation(relation, config)
        inferred = infer_relationships(self.resource, [relation], self.schema)
        if not inferred:
            raise SchemaError(f"Cannot infer relationship '{relation}' on '{self.resource}'", resource=self.resource, field=relation)
        self._relations.update(inferred)
        return self

    def with_relation(self, name: str, config: Any) -> "ChainQuery":
        self._relations[name] = Relationship.coerce(config)
        return self

    def with_has_one(self, name: str, related_table: str, local_key: str = 'id', related_key: Optional[str] = None) -> "ChainQuery":
        return self.with_relation(name, Relationship.has_one(related_table, related_key=related_key, local_key=local_key))

    def with_has_many(self, name: str, related_table: str, local_key: str = 'id', related_key: Optional[str] = None) -> "ChainQuery":
        return self.with_relation(name, Relationship.has_many(related_table, related_key=related_key, local_key=local_key))

    def with_belongs_to(self, name: str, related_table: str, foreign_key: Optional[str] = None, related_key: str = 'id') -> "ChainQuery":
        return self.with_relation(name, Relationship.belongs_to(related_table, foreign_key=foreign_key, related_key=related_key))

    def with_belongs_to_many(
        self,
        name: str,
        related_table: str,
        pivot_table: str,
        local_key: str = 'id',
        related_key: str = 'id',
        pivot_local_key: Optional[str] = None,
        pivot_related_key: Optional[str] = None,
    ) -> "ChainQuery":
        return self.with_relation(
            name,
            Relationship.belongs_to_many(
                related_table,
                pivot_table,
                pivot_local_key=pivot_local_key,
                pivot_related_key=pivot_related_key,
                local_key=local_key,
                related_key=related_key,
            ),
        )

    def morph_to(
        self,
        type_field: str,
        types: Mapping[str, Any],
        id_field: Optional[str] = None,
        relation_name: Optional[str] = None,
    ) -> "ChainQuery":
        """Restrict rows to the mapped types; with ``id_field`` and ``relation_name`` also load the targets."""
        if types:
            self.where(type_field, 'in', list(types.keys()))
        if id_field and relation_name:
            config = MorphConfig(type_field=type_field, id_field=id_field, relation_name=relation_name, types=types)
            config.validate_against(self.schema)
            self._morphs.append(config)
        return self

    def with_cache(self, cache: Optional[RelationCache]) -> "ChainQuery":
        self._cache = cache
        return self

    # -- execution ------------------------------------------------------------
    def _unsatisfiable(self) -> bool:
        return is_unsatisfiable(self._filters, self.td)

    def _builder(self) -> QueryBuilder:
        return QueryBuilder(self.td, self.compiler)

    def statement(self):
        pagination = None
        if self._limit is not None or self._offset is not None:
            pagination = Pagination(limit=self._limit, offset=self._offset)
        return self._builder().select(
            filters=self._filters or None,
            sorters=self._sorters or None,
            pagination=pagination,
            fields=self._fields,
            extra_where=self._raw,
            group_by=self._group_by or None,
            having=self._having or None,
            aggregates=self._aggregates or None,
            distinct=self._distinct,
        )

    async def get(self) -> List[Dict[str, Any]]:
        if self._unsatisfiable():
            logger.debug("%s: filters cannot match, skipping query", self.resource)
            return []
        rows = [self.td.to_record(r) for r in await self.db.fetch_all(self.statement())]
        if not rows:
            return rows
        if self._relations:
            rows = await self.loader.load_for_records(self.resource, rows, self._relations, cache=self._cache)
        for config in self._morphs:
            morph = MorphQuery(self.db, self.schema, self.compiler, self.resource, config)
            rows = await morph.load(rows)
        return rows

    async def first(self) -> Optional[Dict[str, Any]]:
        rows = await self._clone().limit(1).get()
        return rows[0] if rows else None

    async def count(self) -> int:
        if self._unsatisfiable():
            return 0
        if self._group_by or self._having or self._distinct:
            stmt = self._builder().count_rows(self.statement())
            return int(await self.db.fetch_scalar(stmt) or 0)
        stmt = self._builder().count(filters=self._filters or None, extra_where=self._raw)
        return int(await self.db.fetch_scalar(stmt) or 0)

    async def _aggregate(self, fn: str, field: str) -> Any:
        self.td.require(field)
        if self._unsatisfiable():
            return None
        stmt = self._builder().aggregate(fn, field, filters=self._filters or None, extra_where=self._raw)
        return await self.db.fetch_scalar(stmt)

    async def sum(self, field: str) -> Any:
        return (await self._aggregate('sum', field)) or 0

    async def avg(self, field: str) -> float:
        value = await self._aggregate('avg', field)
        return float(value) if value is not None else 0.0

    async def min(self, field: str) -> Any:
        return await self._aggregate('min', field)

    async def max(self, field: str) -> Any:
        return await self._aggregate('max', field)



def _clause(method: str, condition: Any):
    if isinstance(condition, str):
        condition = text(condition)
    if not isinstance(condition, ClauseElement):
        raise ValidationError(f"{method} expects SQL text or a SQLAlchemy clause, got {type(condition).__name__}")
    return condition

__all__ = ['ChainQuery']
