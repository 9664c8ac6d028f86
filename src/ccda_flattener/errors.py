"""Exception types raised by the flattener."""

from __future__ import annotations


class FlattenerError(Exception):
    """Base exception for ccda-flattener failures."""


class SchemaError(FlattenerError):
    """Raised when section/column metadata is malformed or inconsistent."""


class SourceError(FlattenerError):
    """Raised when raw documents cannot be read or adapted."""


class SinkError(FlattenerError):
    """Raised when flattened rows cannot be written."""


class CoercionError(FlattenerError, ValueError):
    """Raised when a resolved value cannot be converted to its column type."""
