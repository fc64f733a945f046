"""Error taxonomy raised by providerql.

``ValidationError`` is raised for malformed query descriptions and always
surfaces verbatim. ``SchemaError`` names a missing table or column.
``QueryError`` wraps a failed backend round-trip or an unmet post-condition
(record not found, insert returned nothing). ``ConfigurationError`` reports
a connection lacking a required capability.
"""
from __future__ import annotations

from typing import Any, Dict, Optional


class ProviderError(Exception):
    """Base class for every error raised by the data provider."""

    def __init__(self, message: str, *, cause: Optional[BaseException] = None, **context: Any):
        super().__init__(message)
        self.message = message
        self.cause = cause
        self.context: Dict[str, Any] = {k: v for k, v in context.items() if v is not None}

    def __str__(self) -> str:
        return self.message


class ValidationError(ProviderError):
    def __init__(self, message: str, *, field: Optional[str] = None, value: Any = None, **kw: Any):
        super().__init__(message, field=field, **kw)
        self.field = field
        self.value = value


class SchemaError(ProviderError):
    def __init__(self, message: str, *, resource: Optional[str] = None, field: Optional[str] = None, **kw: Any):
        super().__init__(message, resource=resource, field=field, **kw)
        self.resource = resource
        self.field = field


class QueryError(ProviderError):
    def __init__(
        self,
        message: str,
        *,
        statement: Optional[str] = None,
        params: Any = None,
        cause: Optional[BaseException] = None,
        **kw: Any,
    ):
        super().__init__(message, cause=cause, statement=statement, **kw)
        self.statement = statement
        self.params = params


class RecordNotFoundError(QueryError):
    def __init__(self, resource: str, id: Any):
        super().__init__(f"Record not found: {resource} with id {id!r}", resource=resource, id=id)
        self.resource = resource
        self.id = id


class ConstraintViolationError(QueryError):
    """A write violated a uniqueness, not-null, foreign-key or check constraint."""


class ConfigurationError(ProviderError):
    pass


__all__ = [
    'ProviderError',
    'ValidationError',
    'SchemaError',
    'QueryError',
    'RecordNotFoundError',
    'ConstraintViolationError',
    'ConfigurationError',
]
