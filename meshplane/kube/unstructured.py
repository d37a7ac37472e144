"""Accessors for untyped (dict-shaped) API objects.

Getters return ``(value, found)``.  ``found`` is False when any segment of
the path is missing; a value of the wrong type raises :class:`FieldTypeError`
so callers can tell "absent" from "malformed".
"""

from __future__ import annotations

from typing import Any

_MISSING = object()


class FieldTypeError(TypeError):
    """Raised when a nested field exists but holds an unexpected type."""

    def __init__(self, path: tuple[str, ...], expected: str, value: object) -> None:
        super().__init__(
            f"{'.'.join(path)} accessor error: {value!r} is of type {type(value).__name__}, expected {expected}"
        )
        self.path = path


def nested_get(obj: dict[str, Any], *fields: str) -> tuple[Any, bool]:
    current: Any = obj
    for index, name in enumerate(fields):
        if not isinstance(current, dict):
            raise FieldTypeError(fields[:index], "map", current)
        current = current.get(name, _MISSING)
        if current is _MISSING:
            return None, False
    return current, True


def _typed(obj: dict[str, Any], fields: tuple[str, ...], expected: type, label: str) -> tuple[Any, bool]:
    value, found = nested_get(obj, *fields)
    if not found or value is None:
        return None, False
    # bool is an int subclass; keep them apart
    if isinstance(value, bool) and expected is int:
        raise FieldTypeError(fields, label, value)
    if not isinstance(value, expected):
        raise FieldTypeError(fields, label, value)
    return value, True


def nested_string(obj: dict[str, Any], *fields: str) -> tuple[str, bool]:
    value, found = _typed(obj, fields, str, "string")
    return (value, True) if found else ("", False)


def nested_bool(obj: dict[str, Any], *fields: str) -> tuple[bool, bool]:
    value, found = _typed(obj, fields, bool, "bool")
    return (value, True) if found else (False, False)


def nested_int(obj: dict[str, Any], *fields: str) -> tuple[int, bool]:
    value, found = _typed(obj, fields, int, "int")
    return (value, True) if found else (0, False)


def nested_slice(obj: dict[str, Any], *fields: str) -> tuple[list[Any], bool]:
    value, found = _typed(obj, fields, list, "list")
    return (value, True) if found else ([], False)


def nested_map(obj: dict[str, Any], *fields: str) -> tuple[dict[str, Any], bool]:
    value, found = _typed(obj, fields, dict, "map")
    return (value, True) if found else ({}, False)


def set_nested_field(obj: dict[str, Any], value: Any, *fields: str) -> None:
    """Set ``obj[f0][f1]...[fn] = value``, creating intermediate maps."""
    if not fields:
        raise ValueError("at least one field is required")
    current = obj
    for index, name in enumerate(fields[:-1]):
        child = current.get(name)
        if child is None:
            child = {}
            current[name] = child
        elif not isinstance(child, dict):
            raise FieldTypeError(fields[: index + 1], "map", child)
        current = child
    current[fields[-1]] = value


def remove_nested_field(obj: dict[str, Any], *fields: str) -> None:
    parent, found = nested_get(obj, *fields[:-1]) if len(fields) > 1 else (obj, True)
    if found and isinstance(parent, dict):
        parent.pop(fields[-1], None)


def _string_map(obj: dict[str, Any], field: str) -> dict[str, str]:
    metadata = obj.setdefault("metadata", {})
    values = metadata.get(field)
    if values is None:
        values = {}
        metadata[field] = values
    return values


def set_label(obj: dict[str, Any], key: str, value: str) -> None:
    _string_map(obj, "labels")[key] = value


def set_annotation(obj: dict[str, Any], key: str, value: str) -> None:
    _string_map(obj, "annotations")[key] = value


def get_annotation(obj: dict[str, Any], key: str) -> str | None:
    annotations = (obj.get("metadata") or {}).get("annotations") or {}
    value = annotations.get(key)
    return None if value is None else str(value)


def is_list(obj: dict[str, Any]) -> bool:
    """True for ``List`` container objects (``kind: List`` or ``*List`` with items)."""
    kind = str(obj.get("kind") or "")
    return kind == "List" or (kind.endswith("List") and isinstance(obj.get("items"), list))
