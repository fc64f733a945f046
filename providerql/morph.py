"""Polymorphic ("morph") relationship queries.

Base rows carry a discriminator column (``type_field``) naming the target
type and an id column (``id_field``). Rows are grouped by discriminator and
each distinct type is loaded with one ``IN`` query against the table mapped
to it, so N base rows spanning K types cost K secondary queries.
"""
from __future__ import annotations

import copy
import inspect
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Sequence, Union

from sqlalchemy.exc import SQLAlchemyError

from .core.filters import FieldFilter, FilterCompiler
from .core.naming import singularize
from .core.schema import Schema, TableDescriptor
from .core.sorting import Pagination, Sorter, strict_pagination
from .errors import ProviderError, QueryError, SchemaError, ValidationError
from .relations import record_value
from .sql.builders import QueryBuilder

logger = logging.getLogger(__name__)

DEFAULT_NESTED_DEPTH = 5

CustomLoader = Callable[[Any, List[Dict[str, Any]], "MorphConfig"], Union[Mapping[Any, Any], Awaitable[Mapping[Any, Any]]]]

_MORPH_KEYS = {
    'typeField': 'type_field',
    'idField': 'id_field',
    'relationName': 'relation_name',
    'pivotTable': 'pivot_table',
    'pivotLocalKey': 'pivot_local_key',
    'pivotForeignKey': 'pivot_foreign_key',
    'localKey': 'local_key',
    'nestedRelations': 'nested_relations',
    'customLoader': 'custom_loader',
}


def _resource_name(ref: Any) -> str:
    if isinstance(ref, str):
        return ref
    if isinstance(ref, TableDescriptor):
        return ref.resource
    tbl = getattr(ref, '__table__', ref)
    name = getattr(tbl, 'name', None)
    if not name:
        raise ValidationError(f"Invalid morph type target: {ref!r}", value=ref)
    return name


@dataclass
class MorphConfig:
    type_field: str
    id_field: str
    relation_name: str
    types: Mapping[str, Any]
    pivot_table: Optional[str] = None
    pivot_local_key: Optional[str] = None
    pivot_foreign_key: Optional[str] = None
    local_key: Optional[str] = None
    nested_relations: Dict[str, Any] = field(default_factory=dict)
    custom_loader: Optional[CustomLoader] = None

    def __post_init__(self):
        if not self.type_field or not self.id_field or not self.relation_name:
            raise ValidationError("Morph config requires type_field, id_field and relation_name")
        if not self.types:
            raise ValidationError("Morph config requires at least one type mapping")
        self.types = {str(k): _resource_name(v) for k, v in dict(self.types).items()}
        self.nested_relations = {k: MorphConfig.coerce(v) for k, v in (self.nested_relations or {}).items()}

    @classmethod
    def coerce(cls, value: Any) -> "MorphConfig":
        if isinstance(value, MorphConfig):
            return value
        if not isinstance(value, Mapping):
            raise ValidationError(f"Invalid morph config: {value!r}", value=value)
        kwargs = {_MORPH_KEYS.get(k, k): v for k, v in value.items()}
        # boolean flag form: {"nested": True, "nestedRelations": {...}}
        kwargs.pop('nested', None)
        try:
            return cls(**kwargs)
        except TypeError as e:
            raise ValidationError(f"Invalid morph config: {e}", value=value, cause=e) from e

    def validate_against(self, schema: Schema) -> None:
        """Fail fast when a mapped table, the pivot table or a nested target is missing."""
        for type_name, resource in self.types.items():
            if schema.get(resource) is None:
                raise ValidationError(
                    f"Table '{resource}' referenced in morph type '{type_name}' does not exist in schema",
                    field=type_name,
                    value=resource,
                )
        if self.pivot_table is not None and schema.get(self.pivot_table) is None:
            raise ValidationError(f"Pivot table '{self.pivot_table}' does not exist in schema", value=self.pivot_table)
        for nested in self.nested_relations.values():
            nested.validate_against(schema)

    @property
    def many_to_many(self) -> bool:
        return self.pivot_table is not None


class MorphQuery:
    """Chainable query over a table with a polymorphic relation.

    ``get()`` runs the base query, then loads the relation with the custom
    loader if one is configured, through the pivot table for many-to-many
    configs, or by grouping on the discriminator otherwise. Nested configs
    are resolved against the loaded related records.
    """

    def __init__(
        self,
        db,
        schema: Schema,
        compiler: FilterCompiler,
        resource: str,
        config: Any,
        max_depth: int = DEFAULT_NESTED_DEPTH,
    ):
        self.db = db
        self.schema = schema
        self.compiler = compiler
        self.td = schema.require(resource)
        self.config = MorphConfig.coerce(config)
        self.config.validate_against(schema)
        self.max_depth = max_depth
        self._filters: List[FieldFilter] = []
        self._sorters: List[Sorter] = []
        self._limit: Optional[int] = None
        self._offset: Optional[int] = None

    def _clone(self) -> "MorphQuery":
        q = object.__new__(MorphQuery)
        q.__dict__.update(self.__dict__)
        q._filters = list(self._filters)
        q._sorters = list(self._sorters)
        return q

    # -- chain ----------------------------------------------------------------
    def where(self, field: str, operator: str, value: Any = None) -> "MorphQuery":
        self.td.require(field)
        self._filters.append(FieldFilter(field, operator, value))
        return self

    def where_type(self, type_name: str) -> "MorphQuery":
        if type_name not in self.config.types:
            raise ValidationError(f"Morph type '{type_name}' is not defined in configuration", value=type_name)
        return self.where(self.config.type_field, 'eq', type_name)

    def where_type_in(self, type_names: Sequence[str]) -> "MorphQuery":
        invalid = [t for t in type_names if t not in self.config.types]
        if invalid:
            raise ValidationError(f"Invalid morph types: {', '.join(invalid)}", value=invalid)
        return self.where(self.config.type_field, 'in', list(type_names))

    def order_by(self, field: str, direction: str = 'asc') -> "MorphQuery":
        self.td.require(field)
        self._sorters.append(Sorter(field, direction))
        return self

    def limit(self, n: int) -> "MorphQuery":
        self._limit = Pagination(limit=n).limit
        return self

    def offset(self, n: int) -> "MorphQuery":
        self._offset = Pagination(offset=n).offset
        return self

    def paginate(self, page: int, page_size: int = 10) -> "MorphQuery":
        lo = strict_pagination(page, page_size).to_limit_offset()
        self._limit, self._offset = lo['limit'], lo['offset']
        return self

    # -- execution ------------------------------------------------------------
    def _builder(self, td: TableDescriptor) -> QueryBuilder:
        return QueryBuilder(td, self.compiler)

    async def _execute_base(self) -> List[Dict[str, Any]]:
        pagination = None
        if self._limit is not None or self._offset is not None:
            pagination = Pagination(limit=self._limit, offset=self._offset)
        stmt = self._builder(self.td).select(
            filters=self._filters or None,
            sorters=self._sorters or None,
            pagination=pagination,
        )
        return [self.td.to_record(r) for r in await self.db.fetch_all(stmt)]

    async def get(self) -> List[Dict[str, Any]]:
        if self.config.custom_loader is not None:
            return await self.get_with_custom_loader()
        return await self.load(await self._execute_base())

    async def load(self, base: Sequence[Mapping[str, Any]]) -> List[Dict[str, Any]]:
        """Attach the configured relation to already-fetched base records."""
        base = [dict(r) for r in base]
        if not base:
            return []
        if self.config.many_to_many:
            values = await self._load_many_to_many(base, self.config)
        else:
            values = await self._load_by_type(base, self.config)
        related = _flatten(values)
        if related and self.config.nested_relations:
            await self._load_nested(related, self.config, 2)
        return _merge(base, self.config.relation_name, values)

    async def first(self) -> Optional[Dict[str, Any]]:
        rows = await self._clone().limit(1).get()
        return rows[0] if rows else None

    async def count(self) -> int:
        stmt = self._builder(self.td).count(filters=self._filters or None)
        return int(await self.db.fetch_scalar(stmt) or 0)

    async def get_many_to_many(self) -> List[Dict[str, Any]]:
        if not self.config.many_to_many:
            raise ValidationError("Many-to-many polymorphic relations require a pivot table")
        return await self.get()

    async def get_with_nested(self) -> List[Dict[str, Any]]:
        return await self.get()

    async def get_with_custom_loader(self) -> List[Dict[str, Any]]:
        loader = self.config.custom_loader
        if loader is None:
            return await self.get()
        base = await self._execute_base()
        if not base:
            return []
        try:
            data = loader(self.db, [dict(r) for r in base], self.config)
            if inspect.isawaitable(data):
                data = await data
        except ProviderError:
            raise
        except Exception as e:
            raise QueryError(f"Custom morph loader failed: {e}", cause=e) from e
        data = data or {}
        values = []
        for i in range(len(base)):
            v = data.get(i)
            if v is None:
                v = data.get(str(i))
            values.append(v)
        return _merge(base, self.config.relation_name, values)

    # -- loading --------------------------------------------------------------
    async def _fetch_type(self, type_name: str, ids: List[Any], config: MorphConfig) -> Dict[str, Dict[str, Any]]:
        """Load one type's rows by primary key; failures degrade to an empty index."""
        resource = config.types.get(type_name)
        try:
            td = self.schema.require(resource)
            pk = td.require_pk()
            rows = await self.db.fetch_all(self._builder(td).by_ids(ids))
        except (SchemaError, QueryError, SQLAlchemyError) as e:
            logger.warning("failed to load morph type %s (%s): %s", type_name, resource, e)
            return {}
        out: Dict[str, Dict[str, Any]] = {}
        for r in rows:
            rec = td.to_record(r)
            out[str(rec.get(pk.key))] = rec
        return out

    async def _load_by_type(self, records: List[Dict[str, Any]], config: MorphConfig) -> List[Optional[Dict[str, Any]]]:
        ids_by_type: Dict[str, List[Any]] = {}
        seen: Dict[str, set] = {}
        for rec in records:
            type_name = record_value(rec, config.type_field)
            morph_id = record_value(rec, config.id_field)
            if type_name is None or morph_id is None or str(type_name) not in config.types:
                continue
            bucket = seen.setdefault(str(type_name), set())
            if str(morph_id) not in bucket:
                bucket.add(str(morph_id))
                ids_by_type.setdefault(str(type_name), []).append(morph_id)
        loaded: Dict[str, Dict[str, Dict[str, Any]]] = {}
        for type_name, ids in ids_by_type.items():
            loaded[type_name] = await self._fetch_type(type_name, ids, config)
        out: List[Optional[Dict[str, Any]]] = []
        for rec in records:
            type_name = record_value(rec, config.type_field)
            morph_id = record_value(rec, config.id_field)
            hit = loaded.get(str(type_name), {}).get(str(morph_id)) if type_name is not None else None
            out.append(copy.deepcopy(hit) if hit is not None else None)
        return out

    async def _load_many_to_many(self, records: List[Dict[str, Any]], config: MorphConfig) -> List[List[Dict[str, Any]]]:
        try:
            pivot = self.schema.require(config.pivot_table)
            local_key = config.local_key or self.td.require_pk().key
            pivot_local = pivot.require(config.pivot_local_key or f"{singularize(self.td.resource)}_id")
            pivot.require(config.type_field)
            pivot.require(config.pivot_foreign_key or config.id_field)
            keys = [record_value(r, local_key) for r in records]
            values = list({str(k): k for k in keys if k is not None}.values())
            if not values:
                return [[] for _ in records]
            order = [Sorter(pivot.primary_key.key)] if pivot.primary_key is not None else None
            stmt = self._builder(pivot).select(sorters=order, extra_where=[pivot_local.column.in_(values)])
            pivot_rows = [pivot.to_record(r) for r in await self.db.fetch_all(stmt)]
        except (SchemaError, QueryError, SQLAlchemyError) as e:
            logger.warning("failed to load pivot rows from %s: %s", config.pivot_table, e)
            return [[] for _ in records]
        # pivot rows carry the discriminator/id pair, so they group like base rows
        pivot_config = MorphConfig(
            type_field=config.type_field,
            id_field=config.pivot_foreign_key or config.id_field,
            relation_name=config.relation_name,
            types=config.types,
        )
        related = await self._load_by_type(pivot_rows, pivot_config)
        grouped: Dict[str, List[Dict[str, Any]]] = {}
        for p, target in zip(pivot_rows, related):
            if target is None:
                continue
            target['_pivot'] = dict(p)
            grouped.setdefault(str(p.get(pivot_local.key)), []).append(target)
        return [
            [copy.deepcopy(t) for t in grouped.get(str(k), [])] if k is not None else []
            for k in keys
        ]

    async def _load_nested(self, related: List[Dict[str, Any]], config: MorphConfig, depth: int) -> None:
        if depth > self.max_depth:
            raise ValidationError(f"Morph nesting exceeds maximum depth of {self.max_depth}")
        for name, nested in config.nested_relations.items():
            values = await self._load_by_type(related, nested)
            for rec, v in zip(related, values):
                rec[name] = v
            inner = [v for v in values if v is not None]
            if inner and nested.nested_relations:
                await self._load_nested(inner, nested, depth + 1)


def _flatten(values: List[Any]) -> List[Dict[str, Any]]:
    out: List[Dict[str, Any]] = []
    for v in values:
        if isinstance(v, list):
            out.extend(v)
        elif v is not None:
            out.append(v)
    return out


def _merge(base: List[Dict[str, Any]], relation_name: str, values: List[Any]) -> List[Dict[str, Any]]:
    out = []
    for rec, v in zip(base, values):
        merged = dict(rec)
        merged[relation_name] = v
        out.append(merged)
    return out


__all__ = ['MorphConfig', 'MorphQuery', 'CustomLoader']
