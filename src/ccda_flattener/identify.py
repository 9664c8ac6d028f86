"""Rule-based document-type identification."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from fnmatch import fnmatchcase
from typing import Iterable, Optional, Tuple

from .values import Scalar, Value, Path, resolve

LOGGER = logging.getLogger("ccda_flattener.identify")

FIELD_DOCUMENT = "document"
FIELD_FILE_NAME = "file_name"


@dataclass(frozen=True)
class IdentificationRule:
    """Match a scalar in the document (or its file name) against a value or glob.

    A rule with neither ``equals`` nor ``pattern`` matches whenever the path
    resolves to a scalar.
    """

    document_type: str
    path: Path = ()
    equals: Optional[str] = None
    pattern: Optional[str] = None
    field: str = FIELD_DOCUMENT

    def matches(self, raw_value: Value, file_name: Optional[str]) -> bool:
        if self.field == FIELD_FILE_NAME:
            candidate = file_name
        else:
            resolved = resolve(raw_value, self.path)
            candidate = str(resolved.value) if isinstance(resolved, Scalar) else None
        if candidate is None:
            return False
        if self.equals is not None and candidate != self.equals:
            return False
        if self.pattern is not None and not fnmatchcase(candidate, self.pattern):
            return False
        return True


class DocumentTypeIdentifier:
    """Return the type tag of the first matching rule, or ``None`` for Unknown."""

    def __init__(self, rules: Iterable[IdentificationRule]) -> None:
        self._rules: Tuple[IdentificationRule, ...] = tuple(rules)

    def identify(self, raw_value: Value, file_name: Optional[str] = None) -> Optional[str]:
        for rule in self._rules:
            if rule.matches(raw_value, file_name):
                return rule.document_type
        LOGGER.debug("No identification rule matched %s", file_name or "document")
        return None
