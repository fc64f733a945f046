"""Filter tree model and compiler.

Filters arrive as refine-style dicts (``{"field", "operator", "value"}`` leaves
and ``{"operator": "and"|"or", "value": [...]}`` groups) or as the
:class:`FieldFilter` / :class:`LogicalFilter` values below, and compile to a
single SQLAlchemy boolean clause against one table.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field as dc_field
from datetime import date, datetime
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple, Union

from sqlalchemy import and_, false, not_, or_, true
from sqlalchemy.sql.sqltypes import Boolean, Date, DateTime, Float, Integer, Numeric

from ..errors import QueryError, SchemaError, ValidationError

logger = logging.getLogger(__name__)

DEFAULT_MAX_DEPTH = 10

_SEQ = (list, tuple, set, frozenset)

# Accepted spellings -> canonical operator
OPERATOR_ALIASES: Dict[str, str] = {
    'like': 'contains',
    'notLike': 'ncontains',
    'not_like': 'ncontains',
    'ilike': 'containss',
    'notIlike': 'ncontainss',
    'not_ilike': 'ncontainss',
    'starts_with': 'startswith',
    'ends_with': 'endswith',
    'notIn': 'nin',
    'not_in': 'nin',
    'isNull': 'null',
    'is_null': 'null',
    'isNotNull': 'nnull',
    'is_not_null': 'nnull',
    'notBetween': 'nbetween',
    'not_between': 'nbetween',
}

LOGICAL_OPERATORS = ('and', 'or')
RANGE_OPERATORS = ('between', 'nbetween')
SET_OPERATORS = ('in', 'nin')
VALUELESS_OPERATORS = ('null', 'nnull')


def canonical_operator(op: str) -> str:
    return OPERATOR_ALIASES.get(op, op)


def _check_range(field: Optional[str], op: str, value: Any) -> Tuple[Any, Any]:
    if not isinstance(value, (list, tuple)) or len(value) != 2:
        raise ValidationError(
            f"'{op}' filter on '{field}' requires an array with exactly 2 values",
            field=field,
            value=value,
        )
    return (value[0], value[1])


def check_range_order(field: Optional[str], op: str, low: Any, high: Any) -> None:
    if low is None or high is None:
        return
    try:
        inverted = low > high
    except TypeError as e:
        raise ValidationError(
            f"'{op}' filter on '{field}' has incomparable bounds {low!r} and {high!r}",
            field=field,
            value=[low, high],
            cause=e,
        ) from e
    if inverted:
        raise ValidationError(
            f"'{op}' filter on '{field}' requires low <= high, got {low!r} > {high!r}",
            field=field,
            value=[low, high],
        )


@dataclass(frozen=True)
class FieldFilter:
    """Leaf condition ``field <operator> value``.

    ``between``/``nbetween`` arity is checked here. Bound ordering is checked
    here for non-string bounds and again at compile time once string bounds
    are coerced to the column type. Set operators store their values as a
    tuple.
    """

    field: str
    operator: str
    value: Any = None

    def __post_init__(self):
        if not self.field or not isinstance(self.field, str):
            raise ValidationError("Filter field is required", field=self.field, value=self.value)
        if not self.operator or not isinstance(self.operator, str):
            raise ValidationError(f"Filter operator is required for field '{self.field}'", field=self.field)
        op = canonical_operator(self.operator)
        object.__setattr__(self, 'operator', op)
        if op in RANGE_OPERATORS:
            low, high = _check_range(self.field, op, self.value)
            if not isinstance(low, str) and not isinstance(high, str):
                check_range_order(self.field, op, low, high)
            object.__setattr__(self, 'value', (low, high))
        elif op in SET_OPERATORS and isinstance(self.value, _SEQ):
            object.__setattr__(self, 'value', tuple(self.value))


@dataclass(frozen=True)
class LogicalFilter:
    operator: str
    value: Tuple["FilterNode", ...] = dc_field(default_factory=tuple)

    def __post_init__(self):
        if self.operator not in LOGICAL_OPERATORS:
            raise ValidationError(f"Logical filter operator must be 'and' or 'or', got {self.operator!r}")
        if not isinstance(self.value, tuple):
            object.__setattr__(self, 'value', tuple(self.value or ()))


FilterNode = Union[FieldFilter, LogicalFilter]


def check_filter_structure(raw: Any, max_depth: int = DEFAULT_MAX_DEPTH) -> None:
    """Reject cyclic or too-deeply nested filter input before any traversal.

    Object identity is tracked along the current path only, so the same
    sub-filter may legitimately appear twice in different branches.
    """

    def visit(node: Any, depth: int, path: set) -> None:
        if depth > max_depth:
            raise ValidationError(f"Filter nesting exceeds maximum depth of {max_depth}")
        if isinstance(node, (list, tuple)):
            children: Iterable[Any] = node
        elif isinstance(node, dict):
            children = node.get('value') if node.get('operator') in LOGICAL_OPERATORS else ()
            children = children if isinstance(children, (list, tuple)) else ()
        elif isinstance(node, LogicalFilter):
            children = node.value
        else:
            return
        ident = id(node)
        if ident in path:
            raise ValidationError("Filters contain a circular reference")
        path.add(ident)
        try:
            child_depth = depth if isinstance(node, (list, tuple)) else depth + 1
            for child in children:
                visit(child, child_depth, path)
        finally:
            path.discard(ident)

    visit(raw, 1, set())


def _parse_node(raw: Any) -> FilterNode:
    if isinstance(raw, (FieldFilter, LogicalFilter)):
        return raw
    if not isinstance(raw, dict):
        raise ValidationError(f"Invalid filter: expected a mapping, got {type(raw).__name__}", value=raw)
    op = raw.get('operator')
    if op in LOGICAL_OPERATORS:
        children = raw.get('value')
        if not isinstance(children, (list, tuple)):
            raise ValidationError(f"Logical '{op}' filter requires a list of filters", value=children)
        return LogicalFilter(op, tuple(_parse_node(c) for c in children))
    return FieldFilter(raw.get('field'), op, raw.get('value'))


def parse_filters(raw: Any, max_depth: int = DEFAULT_MAX_DEPTH) -> List[FilterNode]:
    """Validate and convert raw filter input into filter nodes."""
    if raw is None:
        return []
    if isinstance(raw, (dict, FieldFilter, LogicalFilter)):
        raw = [raw]
    if not isinstance(raw, (list, tuple)):
        raise ValidationError(f"Filters must be a list, got {type(raw).__name__}", value=raw)
    check_filter_structure(raw, max_depth)
    return [_parse_node(n) for n in raw]


def is_unsatisfiable(nodes: Sequence[FilterNode], table: Any = None) -> bool:
    """True when the AND of ``nodes`` can never match, i.e. an effective ``in []``.

    With ``table`` given, leaves on unresolvable fields are ignored since the
    compiler drops them.
    """

    def leaf_empty_in(node: FieldFilter) -> bool:
        if node.operator != 'in' or not isinstance(node.value, _SEQ) or len(node.value) > 0:
            return False
        return table is None or table.resolve(node.field) is not None

    def check(node: FilterNode) -> bool:
        if isinstance(node, FieldFilter):
            return leaf_empty_in(node)
        if node.operator == 'and':
            return any(check(c) for c in node.value)
        return bool(node.value) and all(check(c) for c in node.value)

    return any(check(n) for n in nodes or ())


def coerce_value(col, val):
    """Coerce string filter values (e.g. from a query string) to the column's Python type."""
    if isinstance(val, _SEQ):
        return [coerce_value(col, v) for v in val]
    ctype = getattr(col, 'type', None)
    if ctype is None or not isinstance(val, str):
        return val
    if isinstance(ctype, DateTime):
        s = val.replace('Z', '+00:00') if 'Z' in val else val
        try:
            dv = datetime.fromisoformat(s)
        except ValueError:
            return val
        if not getattr(ctype, 'timezone', False) and dv.tzinfo is not None:
            dv = dv.replace(tzinfo=None)
        return dv
    if isinstance(ctype, Date):
        try:
            return date.fromisoformat(val)
        except ValueError:
            return val
    if isinstance(ctype, Boolean):
        lv = val.strip().lower()
        if lv in ('true', 't', '1', 'yes', 'y'):
            return True
        if lv in ('false', 'f', '0', 'no', 'n'):
            return False
        return val
    try:
        if isinstance(ctype, Integer):
            return int(val)
        if isinstance(ctype, (Float, Numeric)):
            return float(val)
    except ValueError:
        return val
    return val


def _pattern(kind: str, case_sensitive: bool, negate: bool):
    def build(col, v, adapter):
        return adapter.pattern_match(col, kind, v, case_sensitive=case_sensitive, negate=negate)

    return build


def _in(col, v, adapter):
    if not isinstance(v, _SEQ):
        return col == v
    if len(v) == 0:
        return false()
    return col.in_(list(v))


def _nin(col, v, adapter):
    if not isinstance(v, _SEQ):
        return col != v
    if len(v) == 0:
        return true()
    return col.not_in(list(v))


# Global operator registry (extensible); entries take (column, value, adapter)
OPERATOR_REGISTRY: Dict[str, Callable[[Any, Any, Any], Any]] = {
    'eq': lambda col, v, a: col == v,
    'ne': lambda col, v, a: col != v,
    'lt': lambda col, v, a: col < v,
    'lte': lambda col, v, a: col <= v,
    'gt': lambda col, v, a: col > v,
    'gte': lambda col, v, a: col >= v,
    'in': _in,
    'nin': _nin,
    'null': lambda col, v, a: col.is_(None),
    'nnull': lambda col, v, a: col.is_not(None),
    'between': lambda col, v, a: col.between(v[0], v[1]),
    'nbetween': lambda col, v, a: not_(col.between(v[0], v[1])),
    'contains': _pattern('contains', True, False),
    'ncontains': _pattern('contains', True, True),
    'containss': _pattern('contains', False, False),
    'ncontainss': _pattern('contains', False, True),
    'startswith': _pattern('startswith', True, False),
    'nstartswith': _pattern('startswith', True, True),
    'startswiths': _pattern('startswith', False, False),
    'nstartswiths': _pattern('startswith', False, True),
    'endswith': _pattern('endswith', True, False),
    'nendswith': _pattern('endswith', True, True),
    'endswiths': _pattern('endswith', False, False),
    'nendswiths': _pattern('endswith', False, True),
}


def register_operator(name: str, fn: Callable[[Any, Any, Any], Any]):
    OPERATOR_REGISTRY[name] = fn


class FilterCompiler:
    """Compile filter nodes into one SQLAlchemy clause for a table.

    A leaf on a column the table does not have is dropped with a warning.
    Validation and query errors abort compilation. The compiler keeps no
    state between calls.
    """

    def __init__(self, adapter=None, max_depth: int = DEFAULT_MAX_DEPTH, coerce: bool = True):
        if adapter is None:
            from ..adapters import BaseAdapter

            adapter = BaseAdapter()
        self.adapter = adapter
        self.max_depth = max_depth
        self.coerce = coerce

    def prepare(self, filters: Any) -> List[FilterNode]:
        return parse_filters(filters, self.max_depth)

    def compile(self, table, filters: Any):
        """Return a clause, ``true()`` when every condition was dropped, or ``None`` for no filters."""
        nodes = self.prepare(filters)
        if not nodes:
            return None
        clauses = self._compile_children(table, nodes, 1)
        if not clauses:
            logger.warning("all filters on %s were dropped; applying no filtering", table.resource)
            return true()
        return clauses[0] if len(clauses) == 1 else and_(*clauses)

    def compile_node(self, table, node: FilterNode, depth: int = 1):
        if depth > self.max_depth:
            raise ValidationError(f"Filter nesting exceeds maximum depth of {self.max_depth}")
        if isinstance(node, LogicalFilter):
            clauses = self._compile_children(table, node.value, depth + 1)
            if not clauses:
                return None
            if len(clauses) == 1:
                return clauses[0]
            return and_(*clauses) if node.operator == 'and' else or_(*clauses)
        return self._compile_leaf(table, node)

    def _compile_children(self, table, nodes: Iterable[FilterNode], depth: int) -> List[Any]:
        out: List[Any] = []
        for child in nodes:
            try:
                clause = self.compile_node(table, child, depth)
            except SchemaError as e:
                logger.warning("skipping filter on %s: %s", table.resource, e)
                continue
            if clause is not None:
                out.append(clause)
        return out

    def _compile_leaf(self, table, node: FieldFilter):
        fn = OPERATOR_REGISTRY.get(node.operator)
        if fn is None:
            raise QueryError(f"Unknown filter operator: {node.operator}", field=node.field)
        col = table.require(node.field).column
        value = node.value
        if self.coerce and node.operator not in VALUELESS_OPERATORS:
            value = coerce_value(col, value)
        if node.operator in RANGE_OPERATORS:
            check_range_order(node.field, node.operator, value[0], value[1])
        return fn(col, value, self.adapter)


__all__ = [
    'FieldFilter',
    'LogicalFilter',
    'FilterNode',
    'FilterCompiler',
    'OPERATOR_REGISTRY',
    'OPERATOR_ALIASES',
    'register_operator',
    'canonical_operator',
    'check_filter_structure',
    'parse_filters',
    'is_unsatisfiable',
    'coerce_value',
    'DEFAULT_MAX_DEPTH',
]
