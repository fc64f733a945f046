"""Sort descriptors and the canonical pagination descriptor."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional

from ..errors import SchemaError, ValidationError

SORT_ORDERS = ('asc', 'desc')
PAGINATION_MODES = ('server', 'off')

DEFAULT_PAGE_SIZE = 10

_PAGINATION_KEYS = {
    'page': 'page',
    'page_size': 'page_size',
    'pageSize': 'page_size',
    'mode': 'mode',
    'limit': 'limit',
    'offset': 'offset',
}


def order_value(order: Any) -> str:
    if order is None:
        return 'asc'
    val = getattr(order, 'value', order)
    return str(val).lower()


@dataclass(frozen=True)
class Sorter:
    field: str
    order: str = 'asc'

    def __post_init__(self):
        if not self.field or not isinstance(self.field, str):
            raise ValidationError("Sort field is required", field=self.field)
        order = order_value(self.order)
        if order not in SORT_ORDERS:
            raise ValidationError(
                f"Invalid sort order '{self.order}' for field '{self.field}'; expected 'asc' or 'desc'",
                field=self.field,
                value=self.order,
            )
        object.__setattr__(self, 'order', order)


def parse_sorters(raw: Any) -> List[Sorter]:
    if raw is None:
        return []
    if isinstance(raw, (Sorter, Mapping)):
        raw = [raw]
    out: List[Sorter] = []
    for s in raw:
        if isinstance(s, Sorter):
            out.append(s)
        elif isinstance(s, Mapping):
            out.append(Sorter(s.get('field'), s.get('order', s.get('direction', 'asc'))))
        elif isinstance(s, (list, tuple)) and len(s) == 2:
            out.append(Sorter(s[0], s[1]))
        else:
            raise ValidationError(f"Invalid sorter: {s!r}", value=s)
    return out


def compile_sort(table, sorters: Any) -> List[Any]:
    """Compile sorters to ORDER BY expressions, preserving precedence.

    An unresolvable sort field is a validation error: dropping it would
    silently change the ordering.
    """
    out: List[Any] = []
    for s in parse_sorters(sorters):
        try:
            col = table.require(s.field).column
        except SchemaError as e:
            raise ValidationError(
                f"Cannot sort by unknown field '{s.field}' on '{table.resource}'",
                field=s.field,
                cause=e,
            ) from e
        out.append(col.desc() if s.order == 'desc' else col.asc())
    return out


@dataclass(frozen=True)
class Pagination:
    page: int = 1
    page_size: int = DEFAULT_PAGE_SIZE
    mode: str = 'server'
    limit: Optional[int] = None
    offset: Optional[int] = None

    def __post_init__(self):
        if self.mode not in PAGINATION_MODES:
            raise ValidationError(f"Invalid pagination mode '{self.mode}'; expected 'server' or 'off'", value=self.mode)
        for name in ('page', 'page_size'):
            v = getattr(self, name)
            if not isinstance(v, int) or isinstance(v, bool):
                raise ValidationError(f"Pagination {name} must be an integer, got {v!r}", field=name, value=v)
        for name in ('limit', 'offset'):
            v = getattr(self, name)
            if v is None:
                continue
            if not isinstance(v, int) or isinstance(v, bool) or v < 0:
                raise ValidationError(f"Pagination {name} must be a non-negative integer, got {v!r}", field=name, value=v)

    @classmethod
    def parse(cls, raw: Any) -> Optional["Pagination"]:
        if raw is None:
            return None
        if isinstance(raw, Pagination):
            return raw
        if not isinstance(raw, Mapping):
            raise ValidationError(f"Pagination must be a mapping, got {type(raw).__name__}", value=raw)
        kwargs: Dict[str, Any] = {}
        for k, v in raw.items():
            target = _PAGINATION_KEYS.get(k)
            if target is None:
                raise ValidationError(
                    f"Unknown pagination key '{k}'; expected one of page, page_size, mode, limit, offset",
                    field=k,
                    value=v,
                )
            if v is not None:
                kwargs[target] = v
        return cls(**kwargs)

    def to_limit_offset(self) -> Dict[str, int]:
        if self.mode == 'off':
            return {}
        if self.limit is not None or self.offset is not None:
            out: Dict[str, int] = {}
            if self.limit is not None:
                out['limit'] = self.limit
            if self.offset is not None:
                out['offset'] = self.offset
            return out
        return {'limit': self.page_size, 'offset': (self.page - 1) * self.page_size}


def normalize_list_pagination(raw: Any) -> Pagination:
    """List reads: ``page < 1`` becomes 1, ``page_size <= 0`` is an error."""
    p = Pagination.parse(raw) or Pagination()
    if p.mode == 'off':
        return p
    if p.limit is None and p.page_size <= 0:
        raise ValidationError(f"Page size must be at least 1, got {p.page_size}", field='page_size', value=p.page_size)
    if p.page < 1:
        p = Pagination(1, p.page_size, p.mode, p.limit, p.offset)
    return p


def strict_pagination(page: int, page_size: int) -> Pagination:
    if not isinstance(page, int) or isinstance(page, bool) or page < 1:
        raise ValidationError(f"Page must be at least 1, got {page!r}", field='page', value=page)
    if not isinstance(page_size, int) or isinstance(page_size, bool) or page_size < 1:
        raise ValidationError(f"Page size must be at least 1, got {page_size!r}", field='page_size', value=page_size)
    return Pagination(page, page_size)


def compile_pagination(pagination: Any) -> Dict[str, int]:
    p = Pagination.parse(pagination)
    if p is None:
        return {}
    return p.to_limit_offset()


def apply_limit_offset(stmt, pagination: Any):
    lo = compile_pagination(pagination)
    if 'limit' in lo:
        stmt = stmt.limit(lo['limit'])
    if 'offset' in lo and lo['offset']:
        stmt = stmt.offset(lo['offset'])
    return stmt


__all__ = [
    'Sorter',
    'Pagination',
    'parse_sorters',
    'compile_sort',
    'compile_pagination',
    'normalize_list_pagination',
    'strict_pagination',
    'apply_limit_offset',
    'order_value',
    'SORT_ORDERS',
    'DEFAULT_PAGE_SIZE',
]
