"""Turn leaf section instances into wide, typed rows."""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Hashable, Iterable, List, Mapping, Optional, Sequence, Tuple

from dateutil import parser as dtparse

from .diagnostics import Diagnostics
from .errors import CoercionError, SchemaError
from .flatten import InstanceKey, SectionInstance
from .schema import ColumnDef, ColumnType, PathContext, SchemaTree
from .values import NULL, Array, Null, Struct, Value, resolve, to_python

LOGGER = logging.getLogger("ccda_flattener.assemble")

Transform = Callable[[Any], Any]

HL7_TIMESTAMP = re.compile(
    r"^(?P<year>\d{4})(?P<month>\d{2})?(?P<day>\d{2})?"
    r"(?P<hour>\d{2})?(?P<minute>\d{2})?(?P<second>\d{2})?"
    r"(?:\.(?P<fraction>\d{1,6}))?(?P<offset>[+-]\d{4})?$"
)
TRUE_STRINGS = {"true", "1", "yes", "y", "t"}
FALSE_STRINGS = {"false", "0", "no", "n", "f"}


@dataclass(frozen=True)
class FlatRow:
    document_id: str
    section_name: str
    instance_key: InstanceKey
    values: Mapping[str, Any]

    def record(self) -> Dict[str, Any]:
        """Flat mapping handed to sinks."""
        row: Dict[str, Any] = {
            "source_document_id": self.document_id,
            "section_name": self.section_name,
            "instance_key": ".".join(str(position) for position in self.instance_key),
        }
        row.update(self.values)
        return row


def _hl7_timestamp(text: str) -> Optional[datetime]:
    match = HL7_TIMESTAMP.match(text)
    if not match:
        return None
    parts = match.groupdict()
    tz = None
    if parts["offset"]:
        sign = -1 if parts["offset"][0] == "-" else 1
        hours, minutes = int(parts["offset"][1:3]), int(parts["offset"][3:5])
        tz = timezone(sign * timedelta(hours=hours, minutes=minutes))
    return datetime(
        int(parts["year"]),
        int(parts["month"] or 1),
        int(parts["day"] or 1),
        int(parts["hour"] or 0),
        int(parts["minute"] or 0),
        int(parts["second"] or 0),
        int((parts["fraction"] or "0").ljust(6, "0")),
        tzinfo=tz,
    )


def _as_timestamp(raw: Any) -> datetime:
    if isinstance(raw, bool) or not isinstance(raw, str):
        raise CoercionError(f"cannot read {raw!r} as a timestamp")
    text = raw.strip()
    try:
        parsed = _hl7_timestamp(text)
        if parsed is not None:
            return parsed
        return dtparse.isoparse(text)
    except ValueError:
        pass
    try:
        return dtparse.parse(text)
    except (ValueError, OverflowError) as exc:
        raise CoercionError(f"cannot read {raw!r} as a timestamp") from exc


def _as_boolean(raw: Any) -> bool:
    if isinstance(raw, bool):
        return raw
    if isinstance(raw, (int, float)) and raw in (0, 1):
        return bool(raw)
    if isinstance(raw, str):
        lowered = raw.strip().lower()
        if lowered in TRUE_STRINGS:
            return True
        if lowered in FALSE_STRINGS:
            return False
    raise CoercionError(f"cannot read {raw!r} as a boolean")


def _as_integer(raw: Any) -> int:
    if isinstance(raw, bool):
        raise CoercionError(f"cannot read {raw!r} as an integer")
    if isinstance(raw, float):
        if raw.is_integer():
            return int(raw)
        raise CoercionError(f"cannot read {raw!r} as an integer")
    try:
        return int(str(raw).strip())
    except ValueError as exc:
        raise CoercionError(f"cannot read {raw!r} as an integer") from exc


def _as_double(raw: Any) -> float:
    if isinstance(raw, bool):
        raise CoercionError(f"cannot read {raw!r} as a double")
    try:
        return float(str(raw).strip()) if isinstance(raw, str) else float(raw)
    except (ValueError, OverflowError) as exc:
        raise CoercionError(f"cannot read {raw!r} as a double") from exc


def _as_string(raw: Any) -> str:
    if isinstance(raw, bool):
        return "true" if raw else "false"
    return raw if isinstance(raw, str) else str(raw)


def coerce(value: Value, target_type: ColumnType) -> Any:
    """Convert a resolved value into the Python type of its column."""
    if isinstance(value, Null):
        return None

    if isinstance(value, (Struct, Array)):
        if target_type is ColumnType.STRING:
            return json.dumps(to_python(value), separators=(",", ":"), sort_keys=False)
        raise CoercionError(f"nested value cannot be read as {target_type.value}")

    raw = value.value
    if target_type is ColumnType.STRING:
        return _as_string(raw)
    if target_type is ColumnType.INTEGER:
        return _as_integer(raw)
    if target_type is ColumnType.DOUBLE:
        return _as_double(raw)
    if target_type is ColumnType.BOOLEAN:
        return _as_boolean(raw)
    if target_type is ColumnType.TIMESTAMP:
        return _as_timestamp(raw)
    raise CoercionError(f"unsupported column type {target_type!r}")


def validate_transforms(
    schema: SchemaTree, transforms: Optional[Mapping[str, Transform]]
) -> None:
    available = transforms or {}
    missing = sorted(
        {
            column.transform
            for column in schema.all_columns()
            if column.transform and column.transform not in available
        }
    )
    if missing:
        raise SchemaError(f"Unknown column transforms: {', '.join(missing)}")


def pivot(
    triples: Iterable[Tuple[Hashable, str, Any]],
) -> Dict[Hashable, Dict[str, Any]]:
    """Fold long-form ``(row_key, column_name, value)`` triples into wide records.

    Row order follows the first appearance of each key; column order follows
    the order of the triples.
    """
    wide: Dict[Hashable, Dict[str, Any]] = {}
    for row_key, column_name, value in triples:
        wide.setdefault(row_key, {})[column_name] = value
    return wide


def _column_value(
    instance: SectionInstance,
    column: ColumnDef,
    document_root: Value,
    transforms: Mapping[str, Transform],
    diagnostics: Diagnostics,
) -> Any:
    context = document_root if column.path_context is PathContext.ROOT else instance.value
    resolved = resolve(
        context,
        column.path,
        lambda message: diagnostics.anomaly(
            instance.document_id, instance.section_name, f"{column.column_name}: {message}"
        ),
    )
    try:
        converted = coerce(resolved, column.target_type)
    except CoercionError as exc:
        LOGGER.debug(
            "%s/%s.%s: %s",
            instance.document_id,
            instance.section_name,
            column.column_name,
            exc,
        )
        diagnostics.coercion(
            instance.document_id, instance.section_name, column.column_name, str(exc)
        )
        converted = None

    if column.transform:
        transform = transforms.get(column.transform)
        if transform is None:
            raise SchemaError(f"Unknown column transform '{column.transform}'")
        converted = transform(converted)
    return converted


def assemble(
    instances: Sequence[SectionInstance],
    schema: SchemaTree,
    *,
    document_root: Value = NULL,
    transforms: Optional[Mapping[str, Transform]] = None,
    diagnostics: Optional[Diagnostics] = None,
) -> List[FlatRow]:
    """Extract the columns of every leaf instance into one :class:`FlatRow` each.

    Rows are never merged across sections. Instances of a section without
    columns contribute nothing.
    """
    diag = diagnostics if diagnostics is not None else Diagnostics()
    active_transforms = transforms or {}

    def triples() -> Iterable[Tuple[Hashable, str, Any]]:
        for instance in instances:
            row_key = (instance.document_id, instance.section_name, instance.instance_key)
            for column in schema.columns_for(instance.section_name):
                yield (
                    row_key,
                    column.column_name,
                    _column_value(instance, column, document_root, active_transforms, diag),
                )

    return [
        FlatRow(document_id, section_name, instance_key, values)
        for (document_id, section_name, instance_key), values in pivot(triples()).items()
    ]
