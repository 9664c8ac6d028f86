"""Metadata-driven flattening of CCDA documents into wide tables."""

from .assemble import FlatRow, assemble, coerce
from .errors import (CoercionError, FlattenerError, SchemaError, SinkError,
                     SourceError)
from .flatten import ArrayPolicy, SectionInstance, flatten
from .schema import (ColumnDef, ColumnType, PathContext, SchemaTree,
                     SectionDef, SectionKind, build_schema)
from .values import NULL, Array, Null, Scalar, Struct, Value, from_python, resolve

__all__ = [
    "NULL",
    "Array",
    "ArrayPolicy",
    "CoercionError",
    "ColumnDef",
    "ColumnType",
    "FlatRow",
    "FlattenerError",
    "Null",
    "PathContext",
    "Scalar",
    "SchemaError",
    "SchemaTree",
    "SectionDef",
    "SectionInstance",
    "SectionKind",
    "SinkError",
    "SourceError",
    "Struct",
    "Value",
    "assemble",
    "build_schema",
    "coerce",
    "flatten",
    "from_python",
    "resolve",
]
