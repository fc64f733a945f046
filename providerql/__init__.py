"""providerql public API and lightweight lazy exports.

Errors and configuration are imported eagerly; the provider, query builders
and SQLAlchemy-heavy modules are resolved on first attribute access.

Exposes:
- DataProvider, create_provider
- ChainQuery, MorphQuery, MorphConfig
- Relationship, RelationType, RelationCache, RelationshipLoader, infer_relationships
- Schema, TableDescriptor, ColumnDescriptor
- FieldFilter, LogicalFilter, FilterCompiler, register_operator, Sorter, Pagination
- Database, ProviderConfig and the error classes
"""
from __future__ import annotations

from .config import ProviderConfig
from .errors import (
    ConfigurationError,
    ConstraintViolationError,
    ProviderError,
    QueryError,
    RecordNotFoundError,
    SchemaError,
    ValidationError,
)

_LAZY = {
    'DataProvider': '.provider',
    'create_provider': '.provider',
    'ChainQuery': '.query',
    'MorphQuery': '.morph',
    'MorphConfig': '.morph',
    'Relationship': '.relations',
    'RelationType': '.relations',
    'RelationCache': '.relations',
    'RelationshipLoader': '.relations',
    'infer_relationships': '.relations',
    'Schema': '.core.schema',
    'TableDescriptor': '.core.schema',
    'ColumnDescriptor': '.core.schema',
    'FieldFilter': '.core.filters',
    'LogicalFilter': '.core.filters',
    'FilterCompiler': '.core.filters',
    'register_operator': '.core.filters',
    'Sorter': '.core.sorting',
    'Pagination': '.core.sorting',
    'Database': '.connection',
}


def __getattr__(name: str):  # PEP 562 lazy exports
    import importlib as _importlib
    mod = _LAZY.get(name)
    if mod is None:
        raise AttributeError(name)
    return getattr(_importlib.import_module(mod, __name__), name)


__all__ = [
    'ProviderConfig',
    'ProviderError',
    'ValidationError',
    'SchemaError',
    'QueryError',
    'RecordNotFoundError',
    'ConstraintViolationError',
    'ConfigurationError',
    *_LAZY.keys(),
]
