"""``{{path.to.value}}`` interpolation of step configs against run context."""

from __future__ import annotations

import re
from typing import Any, Mapping

_PLACEHOLDER = re.compile(r"\{\{([^}]+)\}\}")


def lookup(context: Mapping[str, Any], path: str) -> Any:
    """Resolve a dotted path, returning ``None`` when any segment is missing."""
    value: Any = context
    for key in path.strip().split("."):
        if isinstance(value, Mapping):
            value = value.get(key)
        else:
            return None
    return value


def interpolate(value: Any, context: Mapping[str, Any]) -> Any:
    """Recursively substitute placeholders in strings, lists and dicts.

    A string consisting of a single placeholder keeps the referenced value's
    type. Unresolved placeholders are left untouched.
    """
    if isinstance(value, str):
        whole = _PLACEHOLDER.fullmatch(value.strip())
        if whole:
            resolved = lookup(context, whole.group(1))
            return value if resolved is None else resolved

        def _replace(match: re.Match) -> str:
            resolved = lookup(context, match.group(1))
            return match.group(0) if resolved is None else str(resolved)

        return _PLACEHOLDER.sub(_replace, value)
    if isinstance(value, list):
        return [interpolate(item, context) for item in value]
    if isinstance(value, dict):
        return {key: interpolate(item, context) for key, item in value.items()}
    return value
