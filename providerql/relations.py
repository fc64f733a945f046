"""Batched relationship loading.

Each relationship is resolved with one secondary query across the whole
record set (two for ``belongsToMany``: pivot rows, then related rows) and the
results are merged back into fresh copies of the input records.
"""
from __future__ import annotations

import copy
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Hashable, List, Mapping, Optional, Sequence, Tuple

from sqlalchemy.exc import SQLAlchemyError

from .core.filters import FilterCompiler, parse_filters
from .core.naming import from_camel, name_variants, pluralize, singularize
from .core.schema import Schema, TableDescriptor
from .core.sorting import Sorter, parse_sorters
from .errors import QueryError, SchemaError, ValidationError
from .sql.builders import QueryBuilder

logger = logging.getLogger(__name__)

DEFAULT_NESTED_DEPTH = 5


class RelationType(str, Enum):
    HAS_ONE = 'hasOne'
    HAS_MANY = 'hasMany'
    BELONGS_TO = 'belongsTo'
    BELONGS_TO_MANY = 'belongsToMany'

    @classmethod
    def parse(cls, value: Any) -> Optional["RelationType"]:
        """Accept enum members, camelCase or snake_case names; ``None`` if unknown."""
        if isinstance(value, cls):
            return value
        if not isinstance(value, str):
            return None
        for member in cls:
            if value == member.value or from_camel(value) == from_camel(member.value):
                return member
        return None

    @property
    def plural(self) -> bool:
        return self in (RelationType.HAS_MANY, RelationType.BELONGS_TO_MANY)


_RELATIONSHIP_KEYS = {
    'relatedTable': 'related_table',
    'localKey': 'local_key',
    'relatedKey': 'related_key',
    'foreignKey': 'foreign_key',
    'pivotTable': 'pivot_table',
    'pivotLocalKey': 'pivot_local_key',
    'pivotRelatedKey': 'pivot_related_key',
    'orderBy': 'order_by',
    'with': 'with_',
}


@dataclass
class Relationship:
    """How records of one resource relate to rows of ``related_table``.

    Omitted keys default by convention: ``id``-style primary keys on both
    sides, ``<singular owner>_id`` on the related side of hasOne/hasMany,
    ``<singular related>_id`` as the belongsTo foreign key.
    """

    type: Any
    related_table: str
    local_key: Optional[str] = None
    related_key: Optional[str] = None
    foreign_key: Optional[str] = None
    pivot_table: Optional[str] = None
    pivot_local_key: Optional[str] = None
    pivot_related_key: Optional[str] = None
    conditions: Any = None
    order_by: Any = None
    with_: Dict[str, Any] = field(default_factory=dict)

    @property
    def kind(self) -> Optional[RelationType]:
        return RelationType.parse(self.type)

    def default(self) -> Any:
        kind = self.kind
        return [] if kind is not None and kind.plural else None

    @classmethod
    def has_one(cls, related_table: str, related_key: Optional[str] = None, local_key: Optional[str] = None, **kw: Any) -> "Relationship":
        return cls(RelationType.HAS_ONE, related_table, local_key=local_key, related_key=related_key, **kw)

    @classmethod
    def has_many(cls, related_table: str, related_key: Optional[str] = None, local_key: Optional[str] = None, **kw: Any) -> "Relationship":
        return cls(RelationType.HAS_MANY, related_table, local_key=local_key, related_key=related_key, **kw)

    @classmethod
    def belongs_to(cls, related_table: str, foreign_key: Optional[str] = None, related_key: Optional[str] = None, **kw: Any) -> "Relationship":
        return cls(RelationType.BELONGS_TO, related_table, foreign_key=foreign_key, related_key=related_key, **kw)

    @classmethod
    def belongs_to_many(
        cls,
        related_table: str,
        pivot_table: str,
        pivot_local_key: Optional[str] = None,
        pivot_related_key: Optional[str] = None,
        **kw: Any,
    ) -> "Relationship":
        return cls(
            RelationType.BELONGS_TO_MANY,
            related_table,
            pivot_table=pivot_table,
            pivot_local_key=pivot_local_key,
            pivot_related_key=pivot_related_key,
            **kw,
        )

    @classmethod
    def coerce(cls, value: Any) -> "Relationship":
        if isinstance(value, Relationship):
            return value
        if not isinstance(value, Mapping):
            raise ValidationError(f"Invalid relationship config: {value!r}", value=value)
        kwargs: Dict[str, Any] = {}
        for k, v in value.items():
            kwargs[_RELATIONSHIP_KEYS.get(k, k)] = v
        if 'type' not in kwargs or 'related_table' not in kwargs:
            raise ValidationError("Relationship config requires 'type' and 'related_table'", value=value)
        try:
            return cls(**kwargs)
        except TypeError as e:
            raise ValidationError(f"Invalid relationship config: {e}", value=value, cause=e) from e


def infer_relationships(resource: str, names: Sequence[str], schema: Schema) -> Dict[str, Relationship]:
    """Guess relationship configs from naming conventions.

    - plural name (not the resource itself): hasMany keyed by ``<singular resource>_id``
    - ``<name>_id``: belongsTo the pluralized stem, attached as ``<name>``
    - singular name whose plural is a table: belongsTo via ``<name>_id``
    - anything else: hasOne
    """
    out: Dict[str, Relationship] = {}
    owner_fk = f"{singularize(resource)}_id"
    for name in names:
        if name.endswith('s') and name != resource:
            out[name] = Relationship.has_many(name, related_key=owner_fk, local_key='id')
        elif name.endswith('_id'):
            stem = name[: -len('_id')]
            table = pluralize(stem)
            if schema.get(table) is None:
                logger.warning("inferred relationship %s.%s targets missing table %s", resource, name, table)
            out[stem] = Relationship.belongs_to(table, foreign_key=name, related_key='id')
        elif schema.get(pluralize(name)) is not None:
            out[name] = Relationship.belongs_to(pluralize(name), foreign_key=f"{name}_id", related_key='id')
        else:
            out[name] = Relationship.has_one(name, related_key=owner_fk, local_key='id')
    return out


def _config_default(raw: Any) -> Any:
    """Empty value for a config that failed to parse, ``[]`` when its type is plural."""
    kind = RelationType.parse(raw.get('type')) if isinstance(raw, Mapping) else None
    return [] if kind is not None and kind.plural else None


def record_value(record: Mapping[str, Any], key: str) -> Any:
    """Read ``key`` from a record, falling back to its snake_case/camelCase spelling."""
    for cand in name_variants(key):
        if cand in record:
            return record[cand]
    return None


def _norm(v: Any) -> str:
    return str(v)


def _distinct(values: Sequence[Any]) -> List[Any]:
    seen = set()
    out: List[Any] = []
    for v in values:
        if v is None:
            continue
        k = _norm(v)
        if k not in seen:
            seen.add(k)
            out.append(v)
    return out


class RelationCache:
    """Opt-in cache of related-row queries, passed explicitly to the loader.

    Key: ``(resource, key column, sorted distinct key values, conditions
    fingerprint)``. Entries expire ``ttl`` seconds after being stored and are
    dropped by :meth:`invalidate` for their resource. Rows are copied in and
    out, so callers never share a cached row.
    """

    def __init__(self, ttl: float = 60.0, clock: Callable[[], float] = time.monotonic):
        self.ttl = ttl
        self._clock = clock
        self._entries: Dict[Tuple[Hashable, ...], Tuple[float, List[Dict[str, Any]]]] = {}
        self.hits = 0
        self.misses = 0

    @staticmethod
    def make_key(resource: str, column: str, values: Sequence[Any], fingerprint: str = '') -> Tuple[Hashable, ...]:
        return (resource, column, tuple(sorted(_norm(v) for v in values)), fingerprint)

    def get(self, key: Tuple[Hashable, ...]) -> Optional[List[Dict[str, Any]]]:
        entry = self._entries.get(key)
        if entry is None:
            self.misses += 1
            return None
        stored_at, rows = entry
        if self._clock() - stored_at > self.ttl:
            del self._entries[key]
            self.misses += 1
            return None
        self.hits += 1
        return copy.deepcopy(rows)

    def set(self, key: Tuple[Hashable, ...], rows: List[Dict[str, Any]]) -> None:
        self._entries[key] = (self._clock(), copy.deepcopy(rows))

    def invalidate(self, resource: Optional[str] = None) -> None:
        if resource is None:
            self._entries.clear()
            return
        for key in [k for k in self._entries if k[0] == resource]:
            del self._entries[key]

    def __len__(self) -> int:
        return len(self._entries)


class RelationshipLoader:
    def __init__(self, db, schema: Schema, compiler: FilterCompiler, max_depth: int = DEFAULT_NESTED_DEPTH):
        self.db = db
        self.schema = schema
        self.compiler = compiler
        self.max_depth = max_depth

    async def load_for_record(
        self,
        resource: str,
        record: Mapping[str, Any],
        relationships: Mapping[str, Any],
        cache: Optional[RelationCache] = None,
    ) -> Dict[str, Any]:
        out = await self.load_for_records(resource, [record], relationships, cache=cache)
        return out[0]

    async def load_for_records(
        self,
        resource: str,
        records: Sequence[Mapping[str, Any]],
        relationships: Mapping[str, Any],
        cache: Optional[RelationCache] = None,
        _depth: int = 1,
    ) -> List[Dict[str, Any]]:
        """Return copies of ``records`` with each named relationship attached.

        A relationship that fails to load (bad config, missing table or
        column, backend error) becomes ``None`` or ``[]`` on every record;
        validation errors propagate.
        """
        if _depth > self.max_depth:
            raise ValidationError(f"Relationship nesting exceeds maximum depth of {self.max_depth}")
        owner = self.schema.require(resource)
        out = [dict(r) for r in records]
        if not out or not relationships:
            return out
        for name, raw in relationships.items():
            try:
                rel = Relationship.coerce(raw)
            except ValidationError as e:
                logger.warning("misconfigured relationship %s.%s: %s", resource, name, e)
                fallback = _config_default(raw)
                for rec in out:
                    rec[name] = copy.deepcopy(fallback)
                continue
            try:
                values = await self._load(owner, out, rel, cache, _depth)
            except ValidationError:
                raise
            except (SchemaError, QueryError, SQLAlchemyError) as e:
                logger.warning("failed to load relationship %s.%s: %s", resource, name, e)
                values = None
            for i, rec in enumerate(out):
                rec[name] = values[i] if values is not None else rel.default()
        return out

    async def _load(self, owner: TableDescriptor, records: List[Dict[str, Any]], rel: Relationship, cache, depth: int) -> List[Any]:
        kind = rel.kind
        if kind is None:
            raise SchemaError(f"Unsupported relationship type {rel.type!r}")
        related = self.schema.get(rel.related_table)
        if related is None:
            raise SchemaError(f"Related table '{rel.related_table}' not found", resource=str(rel.related_table))
        if kind is RelationType.BELONGS_TO_MANY:
            return await self._load_many_to_many(owner, related, records, rel, cache, depth)
        if kind is RelationType.BELONGS_TO:
            local_key = rel.foreign_key or f"{singularize(related.resource)}_id"
            related_key = rel.related_key or related.require_pk().key
        else:
            local_key = rel.local_key or owner.require_pk().key
            related_key = rel.related_key or f"{singularize(owner.resource)}_id"
        related_col = related.require(related_key)
        keys = [record_value(r, local_key) for r in records]
        values = _distinct(keys)
        if not values:
            return [rel.default() for _ in records]
        rows = await self._fetch(related, related_col.key, values, rel, cache)
        if rel.with_:
            rows = await self.load_for_records(related.resource, rows, rel.with_, cache, depth + 1)
        grouped: Dict[str, List[Dict[str, Any]]] = {}
        for row in rows:
            grouped.setdefault(_norm(row.get(related_col.key)), []).append(row)
        result: List[Any] = []
        for k in keys:
            matches = grouped.get(_norm(k), []) if k is not None else []
            if kind is RelationType.HAS_MANY:
                result.append([copy.deepcopy(m) for m in matches])
            else:
                result.append(copy.deepcopy(matches[0]) if matches else None)
        return result

    async def _load_many_to_many(
        self,
        owner: TableDescriptor,
        related: TableDescriptor,
        records: List[Dict[str, Any]],
        rel: Relationship,
        cache,
        depth: int,
    ) -> List[Any]:
        if not rel.pivot_table:
            raise SchemaError("belongsToMany relationship requires a pivot table")
        pivot = self.schema.get(rel.pivot_table)
        if pivot is None:
            raise SchemaError(f"Pivot table '{rel.pivot_table}' not found", resource=str(rel.pivot_table))
        local_key = rel.local_key or owner.require_pk().key
        pivot_local = pivot.require(rel.pivot_local_key or f"{singularize(owner.resource)}_id")
        pivot_related = pivot.require(rel.pivot_related_key or f"{singularize(related.resource)}_id")
        related_col = related.require(rel.related_key or related.require_pk().key)
        keys = [record_value(r, local_key) for r in records]
        values = _distinct(keys)
        if not values:
            return [[] for _ in records]
        pivot_rows = await self._fetch(pivot, pivot_local.key, values, None, cache)
        related_ids = _distinct([p.get(pivot_related.key) for p in pivot_rows])
        if not related_ids:
            return [[] for _ in records]
        rows = await self._fetch(related, related_col.key, related_ids, rel, cache)
        if rel.with_:
            rows = await self.load_for_records(related.resource, rows, rel.with_, cache, depth + 1)
        by_id = {_norm(r.get(related_col.key)): r for r in rows}
        grouped: Dict[str, List[Dict[str, Any]]] = {}
        for p in pivot_rows:
            target = by_id.get(_norm(p.get(pivot_related.key)))
            if target is not None:
                grouped.setdefault(_norm(p.get(pivot_local.key)), []).append(target)
        return [
            [copy.deepcopy(m) for m in grouped.get(_norm(k), [])] if k is not None else []
            for k in keys
        ]

    async def _fetch(
        self,
        td: TableDescriptor,
        column: str,
        values: List[Any],
        rel: Optional[Relationship],
        cache: Optional[RelationCache],
    ) -> List[Dict[str, Any]]:
        conditions = parse_filters(rel.conditions, self.compiler.max_depth) if rel is not None and rel.conditions else []
        sorters: List[Sorter] = parse_sorters(rel.order_by) if rel is not None and rel.order_by else []
        if not sorters and td.primary_key is not None:
            sorters = [Sorter(td.primary_key.key, 'asc')]
        key = None
        if cache is not None:
            key = RelationCache.make_key(td.resource, column, values, repr((conditions, sorters)))
            hit = cache.get(key)
            if hit is not None:
                return hit
        qb = QueryBuilder(td, self.compiler)
        col = td.require(column).column
        stmt = qb.select(filters=conditions or None, sorters=sorters, extra_where=[col.in_(values)])
        rows = [td.to_record(r) for r in await self.db.fetch_all(stmt)]
        if cache is not None and key is not None:
            cache.set(key, rows)
        return rows


__all__ = [
    'RelationType',
    'Relationship',
    'RelationshipLoader',
    'RelationCache',
    'infer_relationships',
    'record_value',
]
