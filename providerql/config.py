"""Provider configuration, optionally loaded from the environment / a .env file."""
from __future__ import annotations

import os
from dataclasses import dataclass, replace
from typing import Any, Mapping, Optional

from dotenv import load_dotenv

from .errors import ConfigurationError

ENV_PREFIX = 'PROVIDERQL_'

_TRUE = ('1', 'true', 't', 'yes', 'y', 'on')
_FALSE = ('0', 'false', 'f', 'no', 'n', 'off')


@dataclass(frozen=True)
class ProviderConfig:
    # Rows per INSERT statement in create_many
    create_batch_size: int = 100
    # Ids per statement in update_many / delete_many
    write_batch_size: int = 50
    max_filter_depth: int = 10
    # None means "ask the dialect adapter"
    supports_returning: Optional[bool] = None
    echo: bool = False
    database_url: Optional[str] = None

    def __post_init__(self):
        for name in ('create_batch_size', 'write_batch_size', 'max_filter_depth'):
            v = getattr(self, name)
            if not isinstance(v, int) or isinstance(v, bool) or v < 1:
                raise ConfigurationError(f"{name} must be a positive integer, got {v!r}")

    def with_overrides(self, **overrides: Any) -> "ProviderConfig":
        return replace(self, **{k: v for k, v in overrides.items() if v is not None})

    @classmethod
    def from_env(
        cls,
        prefix: str = ENV_PREFIX,
        dotenv_path: Optional[str] = None,
        environ: Optional[Mapping[str, str]] = None,
    ) -> "ProviderConfig":
        """Build a config from ``<prefix>*`` environment variables.

        A ``.env`` file is loaded first (without overriding variables that are
        already set). Pass ``environ`` to read from an explicit mapping instead
        of ``os.environ``.
        """
        if environ is None:
            load_dotenv(dotenv_path)
            environ = os.environ
        kwargs: dict = {}
        for name in ('create_batch_size', 'write_batch_size', 'max_filter_depth'):
            raw = environ.get(prefix + name.upper())
            if raw is not None and raw.strip() != '':
                kwargs[name] = _parse_int(prefix + name.upper(), raw)
        raw = environ.get(prefix + 'SUPPORTS_RETURNING')
        if raw is not None and raw.strip() != '':
            kwargs['supports_returning'] = _parse_bool(prefix + 'SUPPORTS_RETURNING', raw)
        raw = environ.get(prefix + 'ECHO')
        if raw is not None and raw.strip() != '':
            kwargs['echo'] = _parse_bool(prefix + 'ECHO', raw)
        url = environ.get(prefix + 'DATABASE_URL')
        if url:
            kwargs['database_url'] = url
        return cls(**kwargs)


def _parse_int(key: str, raw: str) -> int:
    try:
        return int(raw.strip())
    except ValueError as e:
        raise ConfigurationError(f"{key} must be an integer, got {raw!r}", cause=e) from e


def _parse_bool(key: str, raw: str) -> bool:
    lv = raw.strip().lower()
    if lv in _TRUE:
        return True
    if lv in _FALSE:
        return False
    raise ConfigurationError(f"{key} must be a boolean, got {raw!r}")


__all__ = ['ProviderConfig', 'ENV_PREFIX']
