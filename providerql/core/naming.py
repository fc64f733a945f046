from __future__ import annotations

import re
from typing import List

__all__ = [
    'from_camel',
    'to_camel',
    'name_variants',
    'singularize',
    'pluralize',
]

_camel_to_snake_pattern = re.compile(r'(?<!^)(?=[A-Z])')


def from_camel(name: str) -> str:
    """Convert lower/upper camelCase to snake_case."""
    if not name:
        return name
    return _camel_to_snake_pattern.sub('_', str(name)).lower()


def to_camel(name: str) -> str:
    """Convert snake_case to lowerCamelCase."""
    if not name:
        return name
    parts = str(name).split('_')
    if not parts:
        return name
    return parts[0] + ''.join(p.capitalize() for p in parts[1:])


def name_variants(name: str) -> List[str]:
    """Return ``name`` followed by its snake_case and camelCase spellings (deduplicated)."""
    out: List[str] = []
    for cand in (name, from_camel(name), to_camel(name)):
        if cand and cand not in out:
            out.append(cand)
    return out


def singularize(name: str) -> str:
    if not name:
        return name
    if name.endswith('ies') and len(name) > 3:
        return name[:-3] + 'y'
    if name.endswith(('sses', 'xes', 'zes', 'ches', 'shes')):
        return name[:-2]
    if name.endswith('s') and not name.endswith('ss'):
        return name[:-1]
    return name


def pluralize(name: str) -> str:
    if not name:
        return name
    if name.endswith('y') and len(name) > 1 and name[-2] not in 'aeiou':
        return name[:-1] + 'ies'
    if name.endswith(('s', 'x', 'z', 'ch', 'sh')):
        return name + 'es'
    return name + 's'
