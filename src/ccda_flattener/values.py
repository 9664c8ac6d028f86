"""Uniform tree-shaped value model and path resolution."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Mapping, Optional, Tuple, Union

ScalarValue = Union[str, int, float, bool]
Path = Tuple[str, ...]
AnomalyCallback = Callable[[str], None]

EMPTY_PATHS = {"", ".", "$"}


@dataclass(frozen=True)
class Null:
    pass


@dataclass(frozen=True)
class Scalar:
    value: ScalarValue


@dataclass(frozen=True)
class Struct:
    fields: Mapping[str, "Value"] = field(default_factory=dict)


@dataclass(frozen=True)
class Array:
    items: Tuple["Value", ...] = ()


Value = Union[Null, Scalar, Struct, Array]

NULL = Null()


def is_null(value: Value) -> bool:
    return isinstance(value, Null)


def parse_path(path: Union[str, Path, None]) -> Path:
    """Split a dot-separated path into its segments.

    Segments are opaque; a leading ``$`` (variant path syntax) and empty
    segments produced by leading, trailing or doubled dots are dropped.
    """
    if path is None:
        return ()
    if isinstance(path, tuple):
        return path
    text = path.strip()
    if text.startswith("$"):
        text = text[1:]
    if text in EMPTY_PATHS:
        return ()
    return tuple(segment for segment in text.split(".") if segment)


def from_python(obj: Any) -> Value:
    """Adapt a JSON-like Python object into a :class:`Value`."""
    if obj is None:
        return NULL
    if isinstance(obj, (Null, Scalar, Struct, Array)):
        return obj
    if isinstance(obj, Mapping):
        return Struct({str(key): from_python(item) for key, item in obj.items()})
    if isinstance(obj, (list, tuple)):
        return Array(tuple(from_python(item) for item in obj))
    if isinstance(obj, (str, bool, int, float)):
        return Scalar(obj)
    return Scalar(str(obj))


def to_python(value: Value) -> Any:
    if isinstance(value, Scalar):
        return value.value
    if isinstance(value, Struct):
        return {key: to_python(item) for key, item in value.fields.items()}
    if isinstance(value, Array):
        return [to_python(item) for item in value.items]
    return None


def get(value: Value, segment: str, on_anomaly: Optional[AnomalyCallback] = None) -> Value:
    if isinstance(value, Struct):
        return value.fields.get(segment, NULL)
    if isinstance(value, Array):
        if on_anomaly is not None:
            on_anomaly(f"segment '{segment}' applied to an array")
        return NULL
    return NULL


def resolve(
    value: Value,
    path: Union[str, Path, None],
    on_anomaly: Optional[AnomalyCallback] = None,
) -> Value:
    """Resolve ``path`` relative to ``value``.

    Resolution is total: missing fields and traversal through nulls or
    scalars yield :data:`NULL`. A segment applied to an array also yields
    :data:`NULL`; ``on_anomaly`` is told about it because the schema should
    have declared that node as an Array section.
    """
    current = value
    for segment in parse_path(path):
        if isinstance(current, Null):
            return NULL
        current = get(current, segment, on_anomaly)
    return current
