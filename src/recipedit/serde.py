"""Shared serialization and validation utilities for to_dict / from_dict round-trips."""

from collections.abc import Mapping


def as_str_object_dict(value: object, *, field_name: str) -> dict[str, object]:
    """Validate and normalize a mapping value into ``dict[str, object]``."""
    if not isinstance(value, Mapping):
        msg = f"{field_name} must be a mapping."
        raise TypeError(msg)
    return {str(key): item for key, item in value.items()}


def optional_string(value: object, *, field_name: str) -> str | None:
    """Validate an optional string field."""
    if value is None:
        return None
    if not isinstance(value, str):
        msg = f"{field_name} must be a string or None."
        raise TypeError(msg)
    return value


def string_or_empty(value: object, *, field_name: str) -> str:
    """Validate an optional string field, mapping ``None`` to ``""``."""
    return optional_string(value, field_name=field_name) or ""


def require_string(value: object, *, field_name: str) -> str:
    """Validate a required non-empty string field."""
    if not isinstance(value, str) or not value.strip():
        msg = f"{field_name} must be a non-empty string."
        raise TypeError(msg)
    return value


def optional_bool(value: object, *, field_name: str, default: bool = False) -> bool:
    """Validate an optional boolean field."""
    if value is None:
        return default
    if not isinstance(value, bool):
        msg = f"{field_name} must be a bool."
        raise TypeError(msg)
    return value


def string_tuple(value: object, *, field_name: str) -> tuple[str, ...]:
    """Validate and normalize an optional sequence of strings into ``tuple[str, ...]``."""
    if value is None:
        return ()
    if not isinstance(value, (list, tuple)):
        msg = f"{field_name} must be a sequence of strings."
        raise TypeError(msg)

    result: list[str] = []
    for index, item in enumerate(value):
        if not isinstance(item, str):
            msg = f"{field_name}[{index}] must be a string."
            raise TypeError(msg)
        result.append(item)
    return tuple(result)


def object_list(value: object, *, field_name: str) -> list[object]:
    """Validate an optional sequence field and return it as a list (``None`` -> ``[]``)."""
    if value is None:
        return []
    if not isinstance(value, (list, tuple)):
        msg = f"{field_name} must be a sequence."
        raise TypeError(msg)
    return list(value)
