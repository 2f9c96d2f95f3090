"""
Dot-path access and ``{{ path }}`` template rendering over nested data.

Paths are dot separated (``review.output.score``). A segment may index a
list either as a bare number (``items.0``) or in brackets (``items[0]``).
"""

from __future__ import annotations

import json
import re
from collections.abc import Mapping
from typing import Any

_INDEXED = re.compile(r"^([A-Za-z_][A-Za-z0-9_-]*)\[(\d+)\]$")
_VARIABLE = re.compile(r"\{\{\s*([A-Za-z_][A-Za-z0-9_.\-\[\]]*)\s*\}\}")

_MISSING = object()


def split_path(path: str) -> list[str | int]:
    """Split a dot path into keys and list indices.

    Raises:
        ValueError: empty path or empty segment
    """
    if not path or not path.strip():
        raise ValueError("Path must be a non-empty string")
    segments: list[str | int] = []
    for part in path.split("."):
        if not part:
            raise ValueError(f"Invalid path '{path}': empty segment")
        match = _INDEXED.match(part)
        if match:
            segments.append(match.group(1))
            segments.append(int(match.group(2)))
        else:
            segments.append(part)
    return segments


def get_path(data: Any, path: str, default: Any = None) -> Any:
    """Read a nested value, returning ``default`` when any segment is missing."""
    current = data
    for segment in split_path(path):
        if isinstance(current, Mapping):
            key = segment if isinstance(segment, str) else str(segment)
            if key not in current:
                return default
            current = current[key]
        elif isinstance(current, (list, tuple)):
            try:
                current = current[int(segment)]
            except (ValueError, IndexError):
                return default
        else:
            return default
    return current


def has_path(data: Any, path: str) -> bool:
    return get_path(data, path, _MISSING) is not _MISSING


def set_path(data: dict[str, Any], path: str, value: Any, *, max_depth: int | None = None) -> None:
    """Write a nested value, creating intermediate dicts.

    Raises:
        ValueError: the path is deeper than ``max_depth`` or crosses a non-container
    """
    segments = split_path(path)
    if max_depth is not None and len(segments) > max_depth:
        raise ValueError(f"Path '{path}' exceeds maximum nesting depth of {max_depth}")
    current: Any = data
    for segment in segments[:-1]:
        if isinstance(current, list) and isinstance(segment, int):
            current = current[segment]
            continue
        if not isinstance(current, dict):
            raise ValueError(f"Cannot set '{path}': '{segment}' is not inside a mapping")
        nxt = current.get(segment)
        if not isinstance(nxt, (dict, list)):
            nxt = {}
            current[segment] = nxt
        current = nxt
    last = segments[-1]
    if isinstance(current, list) and isinstance(last, int):
        current[last] = value
    elif isinstance(current, dict):
        current[last] = value
    else:
        raise ValueError(f"Cannot set '{path}': parent is not a mapping")


def delete_path(data: dict[str, Any], path: str) -> bool:
    segments = split_path(path)
    parent = data if len(segments) == 1 else get_path(data, ".".join(str(s) for s in segments[:-1]))
    if isinstance(parent, dict) and segments[-1] in parent:
        del parent[segments[-1]]
        return True
    return False


def paths_overlap(a: str, b: str) -> bool:
    """True when one path is the other or lies beneath it."""
    return a == b or a.startswith(b + ".") or b.startswith(a + ".")


def depth_of(value: Any) -> int:
    """Nesting depth of dicts/lists (a scalar has depth 0)."""
    if isinstance(value, Mapping):
        return 1 + max((depth_of(v) for v in value.values()), default=0)
    if isinstance(value, (list, tuple)):
        return 1 + max((depth_of(v) for v in value), default=0)
    return 0


def to_jsonable(value: Any) -> Any:
    """Best-effort conversion of a result for the keyed store."""
    if callable(getattr(value, "to_dict", None)):
        value = value.to_dict()
    try:
        json.dumps(value)
        return value
    except (TypeError, ValueError):
        return repr(value)


def to_text(value: Any) -> str:
    if isinstance(value, str):
        return value
    if value is None:
        return ""
    try:
        return json.dumps(value, default=str)
    except (TypeError, ValueError):
        return str(value)


def render_template(template: str, data: Any, *, missing: list[str] | None = None) -> str:
    """Replace ``{{ path }}`` (or ``{{ context.path }}``) with values from ``data``.

    Unresolved variables render as an empty string and their paths are
    appended to ``missing`` when a list is given.
    """

    def substitute(match: re.Match[str]) -> str:
        path = match.group(1)
        lookup = path[len("context.") :] if path.startswith("context.") else path
        value = get_path(data, lookup, _MISSING)
        if value is _MISSING:
            if missing is not None:
                missing.append(path)
            return ""
        return to_text(value)

    return _VARIABLE.sub(substitute, template)


__all__ = [
    "split_path",
    "get_path",
    "has_path",
    "set_path",
    "delete_path",
    "paths_overlap",
    "depth_of",
    "to_jsonable",
    "to_text",
    "render_template",
]
