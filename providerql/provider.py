"""Refine-style data provider over SQLAlchemy async engines.

Every operation takes a resource name (a registered table) plus its
parameters and returns a response dict: ``{"data": ..., "total": n}`` for
list reads and ``{"data": ...}`` otherwise.
"""
from __future__ import annotations

import asyncio
import inspect
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Mapping, Optional, Sequence, TypeVar, Union

from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine

from .adapters import BaseAdapter
from .config import ProviderConfig
from .connection import Database
from .core.filters import FilterCompiler, is_unsatisfiable
from .core.schema import Schema, TableDescriptor
from .core.sorting import compile_sort, normalize_list_pagination
from .errors import ConfigurationError, RecordNotFoundError, ValidationError
from .morph import MorphQuery
from .query import ChainQuery
from .relations import RelationCache, RelationshipLoader, infer_relationships
from .sql.builders import QueryBuilder, WriteExecutor, order_by_ids

logger = logging.getLogger(__name__)

T = TypeVar('T')


class DataProvider:
    def __init__(self, db: Database, schema: Any, config: Optional[ProviderConfig] = None):
        self.db = db
        self.schema = Schema.coerce(schema)
        self.config = config or ProviderConfig()
        adapter = getattr(db, 'adapter', None) or BaseAdapter()
        self.compiler = FilterCompiler(adapter, max_depth=self.config.max_filter_depth)
        self.relations = RelationshipLoader(db, self.schema, self.compiler)

    def _table(self, resource: str) -> TableDescriptor:
        return self.schema.require(resource)

    def _builder(self, td: TableDescriptor) -> QueryBuilder:
        return QueryBuilder(td, self.compiler)

    def _writer(self, td: TableDescriptor) -> WriteExecutor:
        return WriteExecutor(
            self.db,
            self._builder(td),
            create_batch_size=self.config.create_batch_size,
            write_batch_size=self.config.write_batch_size,
        )

    async def _with_relations(self, resource: str, records: List[Dict[str, Any]], relations: Any, cache: Optional[RelationCache]):
        if not relations or not records:
            return records
        configs = self._relationship_configs(resource, relations)
        return await self.relations.load_for_records(resource, records, configs, cache=cache)

    def _relationship_configs(self, resource: str, relations: Any) -> Dict[str, Any]:
        if isinstance(relations, Mapping):
            return dict(relations)
        if isinstance(relations, str):
            relations = [relations]
        return infer_relationships(resource, list(relations), self.schema)

    # -- reads ----------------------------------------------------------------
    async def get_list(
        self,
        resource: str,
        filters: Any = None,
        sorters: Any = None,
        pagination: Any = None,
        relations: Any = None,
        cache: Optional[RelationCache] = None,
    ) -> Dict[str, Any]:
        td = self._table(resource)
        nodes = self.compiler.prepare(filters)
        page = normalize_list_pagination(pagination)
        compile_sort(td, sorters)
        if is_unsatisfiable(nodes, td):
            logger.debug("get_list %s: filters cannot match, skipping query", resource)
            return {'data': [], 'total': 0}
        qb = self._builder(td)
        data_stmt = qb.select(filters=nodes or None, sorters=sorters, pagination=page)
        count_stmt = qb.count(filters=nodes or None)
        rows, total = await asyncio.gather(self.db.fetch_all(data_stmt), self.db.fetch_scalar(count_stmt))
        data = [td.to_record(r) for r in rows]
        data = await self._with_relations(resource, data, relations, cache)
        return {'data': data, 'total': int(total or 0)}

    async def get_one(self, resource: str, id: Any, relations: Any = None, cache: Optional[RelationCache] = None) -> Dict[str, Any]:
        td = self._table(resource)
        rows = await self.db.fetch_all(self._builder(td).by_id(id))
        if not rows:
            raise RecordNotFoundError(resource, id)
        data = await self._with_relations(resource, [td.to_record(rows[0])], relations, cache)
        return {'data': data[0]}

    async def get_many(self, resource: str, ids: Sequence[Any]) -> Dict[str, Any]:
        td = self._table(resource)
        ids = list(ids or [])
        if not ids:
            return {'data': []}
        rows = await self.db.fetch_all(self._builder(td).by_ids(ids))
        return {'data': order_by_ids([td.to_record(r) for r in rows], ids, td.require_pk().key)}

    async def get_with_relations(
        self,
        resource: str,
        id: Any,
        relations: Any = None,
        relationship_configs: Optional[Mapping[str, Any]] = None,
        cache: Optional[RelationCache] = None,
    ) -> Dict[str, Any]:
        """Fetch one record and attach relations.

        ``relations`` lists relation names; names without an entry in
        ``relationship_configs`` are inferred from naming conventions.
        """
        td = self._table(resource)
        rows = await self.db.fetch_all(self._builder(td).by_id(id))
        if not rows:
            raise RecordNotFoundError(resource, id)
        record = td.to_record(rows[0])
        configs: Dict[str, Any] = dict(relationship_configs or {})
        if relations:
            names = [relations] if isinstance(relations, str) else list(relations)
            missing = [n for n in names if n not in configs]
            configs.update(infer_relationships(resource, missing, self.schema))
        if not configs:
            return {'data': record}
        return {'data': await self.relations.load_for_record(resource, record, configs, cache=cache)}

    # -- writes ---------------------------------------------------------------
    async def create(self, resource: str, variables: Mapping[str, Any]) -> Dict[str, Any]:
        return {'data': await self._writer(self._table(resource)).create(variables or {})}

    async def create_many(self, resource: str, variables: Sequence[Mapping[str, Any]]) -> Dict[str, Any]:
        return {'data': await self._writer(self._table(resource)).create_many(list(variables or []))}

    async def update(self, resource: str, id: Any, variables: Mapping[str, Any]) -> Dict[str, Any]:
        if not variables:
            raise ValidationError(f"No values to update on '{resource}'")
        return {'data': await self._writer(self._table(resource)).update(id, variables)}

    async def update_many(self, resource: str, ids: Sequence[Any], variables: Mapping[str, Any]) -> Dict[str, Any]:
        if not variables:
            raise ValidationError(f"No values to update on '{resource}'")
        return {'data': await self._writer(self._table(resource)).update_many(list(ids or []), variables)}

    async def delete_one(self, resource: str, id: Any) -> Dict[str, Any]:
        return {'data': await self._writer(self._table(resource)).delete(id)}

    async def delete_many(self, resource: str, ids: Sequence[Any]) -> Dict[str, Any]:
        return {'data': await self._writer(self._table(resource)).delete_many(list(ids or []))}

    # -- builders -------------------------------------------------------------
    def from_(self, resource: str) -> ChainQuery:
        return ChainQuery(self.db, self.schema, self.compiler, self.relations, resource)

    def morph_to(self, resource: str, config: Any) -> MorphQuery:
        return MorphQuery(self.db, self.schema, self.compiler, resource, config)

    # -- raw / transactions ---------------------------------------------------
    async def execute_raw(self, sql: str, params: Any = None) -> List[Dict[str, Any]]:
        execute_raw = getattr(self.db, 'execute_raw', None)
        if not callable(execute_raw):
            raise ConfigurationError(f"Connection {type(self.db).__name__} does not support raw SQL execution")
        return await execute_raw(sql, params)

    @asynccontextmanager
    async def begin(self) -> AsyncIterator["DataProvider"]:
        """Yield a provider bound to one transaction; rolls back if the block raises."""
        begin = getattr(self.db, 'begin', None)
        if not callable(begin):
            raise ConfigurationError(f"Connection {type(self.db).__name__} does not support transactions")
        async with begin() as tx_db:
            yield DataProvider(tx_db, self.schema, self.config)

    async def transaction(self, fn: Callable[["DataProvider"], Union[Awaitable[T], T]]) -> T:
        """Run ``fn(tx_provider)`` in a transaction and return its result.

        Any exception raised by ``fn`` rolls the transaction back and is
        re-raised unchanged.
        """
        async with self.begin() as tx:
            result = fn(tx)
            if inspect.isawaitable(result):
                result = await result
            return result


def create_provider(
    bind: Union[str, AsyncEngine, AsyncConnection, Database, None],
    schema: Any,
    config: Optional[ProviderConfig] = None,
    **engine_kw: Any,
) -> DataProvider:
    """Build a provider from a database URL, an async engine/connection or a ``Database``."""
    config = config or ProviderConfig()
    if bind is None:
        bind = config.database_url
    if isinstance(bind, Database):
        db = bind
    elif isinstance(bind, str):
        db = Database.from_url(bind, echo=config.echo, supports_returning=config.supports_returning, **engine_kw)
    elif isinstance(bind, (AsyncEngine, AsyncConnection)):
        db = Database(bind, supports_returning=config.supports_returning)
    else:
        raise ConfigurationError(f"Cannot create a provider from {bind!r}; pass a database URL or an async engine")
    return DataProvider(db, schema, config)


__all__ = ['DataProvider', 'create_provider']
