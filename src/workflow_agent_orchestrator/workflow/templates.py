"""``{{name}}`` placeholder substitution.

Placeholders may use dotted paths into nested mappings (``{{user.name}}``)
and may carry whitespace inside the braces. Anything that doesn't resolve is
left exactly as written, so interpolation never fails.
"""

from __future__ import annotations

import json
import re
from collections.abc import Mapping
from typing import Any

_PLACEHOLDER = re.compile(r"\{\{\s*([A-Za-z_][\w-]*(?:\.[\w-]+)*)\s*\}\}")

_MISSING = object()


def resolve(path: str, bindings: Mapping[str, Any]) -> Any:
    """Look up a dotted ``path`` in ``bindings``; returns a sentinel when absent."""
    current: Any = bindings
    for part in path.split("."):
        if isinstance(current, Mapping) and part in current:
            current = current[part]
        elif isinstance(current, list) and part.isdigit() and int(part) < len(current):
            current = current[int(part)]
        else:
            return _MISSING
    return current


def lookup(path: str, bindings: Mapping[str, Any], default: Any = None) -> Any:
    value = resolve(path, bindings)
    return default if value is _MISSING else value


def _stringify(value: Any) -> str:
    if isinstance(value, str):
        return value
    if isinstance(value, (dict, list)):
        return json.dumps(value, ensure_ascii=False, default=str)
    return str(value)


def interpolate(template: str, bindings: Mapping[str, Any]) -> str:
    """Replace every resolvable placeholder in ``template``."""
    if "{{" not in template:
        return template

    def _sub(match: re.Match[str]) -> str:
        value = resolve(match.group(1), bindings)
        if value is _MISSING or value is None:
            return match.group(0)
        return _stringify(value)

    return _PLACEHOLDER.sub(_sub, template)


def interpolate_deep(value: Any, bindings: Mapping[str, Any]) -> Any:
    """Apply :func:`interpolate` to every string inside nested dicts/lists."""
    if isinstance(value, str):
        return interpolate(value, bindings)
    if isinstance(value, dict):
        return {k: interpolate_deep(v, bindings) for k, v in value.items()}
    if isinstance(value, list):
        return [interpolate_deep(v, bindings) for v in value]
    return value


def placeholders(template: str) -> list[str]:
    """Names referenced by ``template`` in order of appearance."""
    return [m.group(1) for m in _PLACEHOLDER.finditer(template)]
