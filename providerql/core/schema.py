"""Table/column descriptors built once when a schema is registered.

A :class:`TableDescriptor` wraps a SQLAlchemy ``Table`` (optionally the
declarative model mapped to it) and exposes a normalized field -> column
index, so that lookups never have to sniff the table representation at
query time.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Iterable, Iterator, List, Mapping, Optional

from sqlalchemy import Column, MetaData, Table
from sqlalchemy import inspect as sa_inspect

from ..errors import SchemaError
from .naming import from_camel, to_camel

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ColumnDescriptor:
    name: str
    key: str
    column: Column
    primary_key: bool = False
    nullable: bool = True

    @property
    def type(self) -> Any:
        return self.column.type


class TableDescriptor:
    """Read-only view of one table: resource name, primary key, field index."""

    def __init__(self, resource: str, table: Table, model: Any = None):
        self.resource = resource
        self.table = table
        self.model = model
        self.columns: Dict[str, ColumnDescriptor] = {}
        self._by_name: Dict[str, ColumnDescriptor] = {}
        self._by_lower: Dict[str, ColumnDescriptor] = {}
        for col in table.columns:
            cd = ColumnDescriptor(
                name=col.name,
                key=col.key,
                column=col,
                primary_key=bool(col.primary_key),
                nullable=bool(col.nullable),
            )
            self.columns[col.key] = cd
            self._by_name.setdefault(col.name, cd)
            self._by_lower.setdefault(col.name.lower(), cd)
        # ORM attribute names may differ from the column key
        self._by_attr: Dict[str, ColumnDescriptor] = {}
        if model is not None:
            try:
                mapper = sa_inspect(model)
            except Exception:
                mapper = None
            for attr in getattr(mapper, 'column_attrs', ()) or ():
                cols = getattr(attr, 'columns', None) or []
                if not cols:
                    continue
                cd = self.columns.get(getattr(cols[0], 'key', None))
                if cd is not None:
                    self._by_attr.setdefault(attr.key, cd)
        pks = [cd for cd in self.columns.values() if cd.primary_key]
        self.primary_key: Optional[ColumnDescriptor] = pks[0] if pks else None

    def __repr__(self) -> str:
        return f"TableDescriptor({self.resource!r})"

    def __contains__(self, field: object) -> bool:
        return isinstance(field, str) and self.resolve(field) is not None

    def _direct(self, field: str) -> Optional[ColumnDescriptor]:
        return self.columns.get(field) or self._by_attr.get(field) or self._by_name.get(field)

    def resolve(self, field: str) -> Optional[ColumnDescriptor]:
        """Resolve a field name to a column, or ``None`` when no column matches.

        Tries the column key / ORM attribute, then the declared column name,
        then the snake_case and camelCase spellings, and finally a
        case-insensitive match on the declared name.
        """
        if not field:
            return None
        field = str(field)
        cd = self._direct(field)
        if cd is not None:
            return cd
        for variant in (from_camel(field), to_camel(field)):
            if variant != field:
                cd = self._direct(variant)
                if cd is not None:
                    return cd
        return self._by_lower.get(field.lower()) or self._by_lower.get(from_camel(field).lower())

    def require(self, field: str) -> ColumnDescriptor:
        cd = self.resolve(field)
        if cd is None:
            raise SchemaError(f"Unknown column '{field}' on '{self.resource}'", resource=self.resource, field=field)
        return cd

    def require_pk(self) -> ColumnDescriptor:
        if self.primary_key is None:
            raise SchemaError(f"Table '{self.resource}' has no primary key", resource=self.resource)
        return self.primary_key

    def column(self, field: str) -> Column:
        return self.require(field).column

    def field_names(self) -> List[str]:
        return list(self.columns.keys())

    def to_record(self, row: Any) -> Dict[str, Any]:
        """Turn a result row into a plain dict keyed by column key."""
        mapping = getattr(row, '_mapping', row)
        return {k: mapping[k] for k in mapping.keys()}

    def to_values(self, data: Mapping[str, Any]) -> Dict[str, Any]:
        """Map caller field names to column keys; unknown fields raise SchemaError."""
        out: Dict[str, Any] = {}
        for k, v in (data or {}).items():
            out[self.require(k).key] = v
        return out


def _table_and_model(obj: Any):
    if isinstance(obj, TableDescriptor):
        return obj.table, obj.model
    if isinstance(obj, Table):
        return obj, None
    tbl = getattr(obj, '__table__', None)
    if isinstance(tbl, Table):
        return tbl, obj
    raise SchemaError(f"Unsupported table object: {obj!r}")


class Schema(Mapping[str, TableDescriptor]):
    """Resource name -> :class:`TableDescriptor` registry."""

    def __init__(self, tables: Optional[Mapping[str, Any]] = None):
        self._tables: Dict[str, TableDescriptor] = {}
        for resource, obj in (tables or {}).items():
            self.register(obj, resource=resource)

    def register(self, obj: Any, resource: Optional[str] = None) -> TableDescriptor:
        table, model = _table_and_model(obj)
        name = resource or table.name
        td = TableDescriptor(name, table, model)
        self._tables[name] = td
        logger.debug("registered resource %s -> table %s", name, table.name)
        return td

    @classmethod
    def from_metadata(cls, metadata: MetaData) -> "Schema":
        schema = cls()
        for table in metadata.sorted_tables:
            schema.register(table)
        return schema

    @classmethod
    def from_base(cls, base: Any) -> "Schema":
        """Register every mapped class of a declarative base, plus bare tables in its metadata."""
        schema = cls()
        mapped = set()
        for mapper in base.registry.mappers:
            tbl = getattr(mapper, 'local_table', None)
            if isinstance(tbl, Table):
                schema.register(mapper.class_)
                mapped.add(tbl.name)
        for table in base.metadata.sorted_tables:
            if table.name not in mapped:
                schema.register(table)
        return schema

    @classmethod
    def coerce(cls, obj: Any) -> "Schema":
        if isinstance(obj, Schema):
            return obj
        if isinstance(obj, MetaData):
            return cls.from_metadata(obj)
        if hasattr(obj, 'registry') and hasattr(obj, 'metadata'):
            return cls.from_base(obj)
        if isinstance(obj, Mapping):
            return cls(obj)
        if isinstance(obj, Iterable):
            schema = cls()
            for item in obj:
                schema.register(item)
            return schema
        raise SchemaError(f"Cannot build a schema from {obj!r}")

    def __getitem__(self, resource: str) -> TableDescriptor:
        return self._tables[resource]

    def __iter__(self) -> Iterator[str]:
        return iter(self._tables)

    def __len__(self) -> int:
        return len(self._tables)

    def get(self, resource: Any, default: Any = None) -> Optional[TableDescriptor]:  # type: ignore[override]
        if isinstance(resource, TableDescriptor):
            return resource
        if isinstance(resource, Table):
            for td in self._tables.values():
                if td.table is resource:
                    return td
            return default
        if not isinstance(resource, str):
            tbl = getattr(resource, '__table__', None)
            return self.get(tbl, default) if tbl is not None else default
        td = self._tables.get(resource)
        if td is None:
            for variant in (from_camel(resource), to_camel(resource)):
                td = self._tables.get(variant)
                if td is not None:
                    break
        return td if td is not None else default

    def require(self, resource: Any) -> TableDescriptor:
        td = self.get(resource)
        if td is None:
            raise SchemaError(f"Unknown resource '{resource}'", resource=str(resource))
        return td


__all__ = ['ColumnDescriptor', 'TableDescriptor', 'Schema']
