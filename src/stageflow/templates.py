# templates.py
"""
Reusable job fragments.

Resolution is two-pass: every template (top-level key starting with ".") is
collected into a mapping first, then each job is materialized by structural
deep-merge of its `extends` chain and its own keys. Nothing relies on YAML
aliasing or shared references; inputs are never mutated.

Merge policy:
  - mapping + mapping -> merged key by key, recursively
  - anything else     -> the overriding value replaces the base value outright
                         (lists are not concatenated)
"""
from __future__ import annotations

from copy import deepcopy
from typing import Any, Dict, List, Mapping, Optional

from .errors import ConfigurationError


def deep_merge(base: Mapping[str, Any], override: Mapping[str, Any]) -> Dict[str, Any]:
    out: Dict[str, Any] = deepcopy(dict(base))
    for key, value in override.items():
        current = out.get(key)
        if isinstance(current, Mapping) and isinstance(value, Mapping):
            out[key] = deep_merge(current, value)
        else:
            out[key] = deepcopy(value)
    return out


def _extends_of(raw: Mapping[str, Any], owner: str) -> List[str]:
    ext = raw.get("extends")
    if ext is None:
        return []
    if isinstance(ext, str):
        return [ext]
    if isinstance(ext, list) and all(isinstance(x, str) for x in ext):
        return list(ext)
    raise ConfigurationError("invalid_value", f"'{owner}': extends must be a string or a list of strings")


def resolve(
    raw: Mapping[str, Any],
    templates: Mapping[str, Mapping[str, Any]],
    *,
    name: str = "<job>",
    _chain: Optional[List[str]] = None,
) -> Dict[str, Any]:
    """
    Materialize one job (or template) from its raw mapping.

    extends entries are merged left to right, then the job's own keys on top.
    The returned mapping has no `extends` key.
    """
    chain = list(_chain or []) + [name]
    merged: Dict[str, Any] = {}

    for parent in _extends_of(raw, name):
        if parent in chain:
            raise ConfigurationError(
                "template_cycle",
                f"'{name}' extends '{parent}', which is already in the chain",
                {"chain": " -> ".join(chain + [parent])},
            )
        if parent not in templates:
            raise ConfigurationError(
                "missing_template",
                f"'{name}' extends unknown template '{parent}'",
                {"known": sorted(templates)},
            )
        resolved_parent = resolve(templates[parent], templates, name=parent, _chain=chain)
        merged = deep_merge(merged, resolved_parent)

    own = {k: v for k, v in raw.items() if k != "extends"}
    return deep_merge(merged, own)


def apply_defaults(job: Mapping[str, Any], defaults: Mapping[str, Any]) -> Dict[str, Any]:
    """`default:` keys only fill in keys the job leaves unset (no deep merge)."""
    out = deepcopy(dict(job))
    for key, value in defaults.items():
        if key not in out:
            out[key] = deepcopy(value)
    return out
