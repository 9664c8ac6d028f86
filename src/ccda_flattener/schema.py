"""Typed section/column metadata and the schema registry."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from .errors import SchemaError
from .values import Path

LOGGER = logging.getLogger("ccda_flattener.schema")


class SectionKind(str, Enum):
    STRUCT = "Struct"
    ARRAY = "Array"


class PathContext(str, Enum):
    SECTION = "section"
    ROOT = "root"


class ColumnType(str, Enum):
    STRING = "string"
    INTEGER = "integer"
    DOUBLE = "double"
    BOOLEAN = "boolean"
    TIMESTAMP = "timestamp"


SectionKey = Tuple[int, str]

# Identity columns written next to every flattened row.
RESERVED_COLUMNS = {"source_document_id", "section_name", "instance_key"}


@dataclass(frozen=True)
class SectionDef:
    """A named node of the document schema tree."""

    name: str
    path: Path
    kind: SectionKind
    level: int
    parent_name: Optional[str] = None
    join_keys: Tuple[str, ...] = ()

    @property
    def key(self) -> SectionKey:
        return (self.level, self.name)

    @property
    def is_array(self) -> bool:
        return self.kind is SectionKind.ARRAY


@dataclass(frozen=True)
class ColumnDef:
    """A leaf column extracted from the value of its owning section."""

    section_name: str
    column_name: str
    path: Path
    path_context: PathContext
    ordinal: int = 0
    target_type: ColumnType = ColumnType.STRING
    transform: Optional[str] = None


@dataclass
class SchemaTree:
    """Validated, read-only section hierarchy for one source/target pair."""

    source_entity: str
    target_entity: str
    sections: Tuple[SectionDef, ...]
    container: Optional[SectionDef] = None
    children_by_parent: Dict[SectionKey, Tuple[SectionDef, ...]] = field(
        default_factory=dict
    )
    columns_by_section: Dict[SectionKey, Tuple[ColumnDef, ...]] = field(
        default_factory=dict
    )
    warnings: List[str] = field(default_factory=list)

    def roots(self) -> Tuple[SectionDef, ...]:
        return tuple(section for section in self.sections if section.level == 0)

    def root(self, name: str) -> SectionDef:
        for section in self.roots():
            if section.name == name:
                return section
        raise SchemaError(
            f"Component '{name}' is not a level-0 section of "
            f"{self.source_entity}/{self.target_entity}"
        )

    def children(self, section: SectionDef) -> Tuple[SectionDef, ...]:
        return self.children_by_parent.get(section.key, ())

    def columns(self, section: SectionDef) -> Tuple[ColumnDef, ...]:
        return self.columns_by_section.get(section.key, ())

    def columns_for(self, section_name: str) -> Tuple[ColumnDef, ...]:
        result: List[ColumnDef] = []
        for section in self.sections:
            if section.name == section_name:
                result.extend(self.columns(section))
        return tuple(result)

    def leaf_sections(self) -> Tuple[SectionDef, ...]:
        return tuple(section for section in self.sections if not self.children(section))

    def all_columns(self) -> Tuple[ColumnDef, ...]:
        result: List[ColumnDef] = []
        for section in self.sections:
            result.extend(self.columns(section))
        return tuple(result)

    def column_names(self) -> Tuple[str, ...]:
        """Ordered output schema of the target table."""
        return tuple(column.column_name for column in self.all_columns())


def _index_sections(
    sections: Sequence[SectionDef],
) -> Dict[SectionKey, SectionDef]:
    indexed: Dict[SectionKey, SectionDef] = {}
    seen_siblings: set[Tuple[int, Optional[str], str]] = set()
    for section in sections:
        if section.level < 0:
            raise SchemaError(f"Section '{section.name}' has negative level {section.level}")
        if section.level == 0 and section.parent_name:
            raise SchemaError(
                f"Level-0 section '{section.name}' must not declare a parent "
                f"(got '{section.parent_name}')"
            )
        if section.level > 0 and not section.parent_name:
            raise SchemaError(
                f"Section '{section.name}' at level {section.level} has no parent"
            )
        sibling_key = (section.level, section.parent_name, section.name)
        if sibling_key in seen_siblings:
            raise SchemaError(
                f"Section '{section.name}' declared twice at level {section.level}"
                f" under '{section.parent_name}'"
            )
        seen_siblings.add(sibling_key)
        # Same name at one level under different parents cannot be told apart
        # by children or columns, so it is only tolerated if never referenced.
        indexed.setdefault(section.key, section)
    return indexed


def _ambiguous_names(sections: Sequence[SectionDef]) -> set[SectionKey]:
    counts: Dict[SectionKey, int] = {}
    for section in sections:
        counts[section.key] = counts.get(section.key, 0) + 1
    return {key for key, count in counts.items() if count > 1}


def _build_children(
    sections: Sequence[SectionDef],
    indexed: Dict[SectionKey, SectionDef],
    ambiguous: set[SectionKey],
) -> Dict[SectionKey, Tuple[SectionDef, ...]]:
    children: Dict[SectionKey, List[SectionDef]] = {}
    for section in sections:
        if section.level == 0:
            continue
        parent_key = (section.level - 1, section.parent_name)
        if parent_key not in indexed:
            raise SchemaError(
                f"Parent '{section.parent_name}' of section '{section.name}' is not "
                f"declared at level {section.level - 1}"
            )
        if parent_key in ambiguous:
            raise SchemaError(
                f"Parent '{section.parent_name}' of section '{section.name}' is "
                f"declared more than once at level {section.level - 1}"
            )
        children.setdefault(parent_key, []).append(section)
    return {key: tuple(value) for key, value in children.items()}


def _build_columns(
    columns: Sequence[ColumnDef],
    sections: Sequence[SectionDef],
) -> Dict[SectionKey, Tuple[ColumnDef, ...]]:
    owners: Dict[str, List[SectionDef]] = {}
    for section in sections:
        owners.setdefault(section.name, []).append(section)

    seen_columns: set[str] = set()
    grouped: Dict[SectionKey, List[Tuple[int, int, ColumnDef]]] = {}
    for position, column in enumerate(columns):
        candidates = owners.get(column.section_name)
        if not candidates:
            raise SchemaError(
                f"Column '{column.column_name}' references undeclared section "
                f"'{column.section_name}'"
            )
        if len(candidates) > 1:
            raise SchemaError(
                f"Column '{column.column_name}' references section "
                f"'{column.section_name}', which is declared more than once"
            )
        if column.column_name.lower() in RESERVED_COLUMNS:
            raise SchemaError(f"Column name '{column.column_name}' is reserved")
        if column.column_name in seen_columns:
            raise SchemaError(f"Column name '{column.column_name}' is not unique")
        seen_columns.add(column.column_name)
        grouped.setdefault(candidates[0].key, []).append(
            (column.ordinal, position, column)
        )

    return {
        key: tuple(column for _, _, column in sorted(entries, key=lambda e: e[:2]))
        for key, entries in grouped.items()
    }


def _pass_through_warnings(tree: SchemaTree) -> List[str]:
    warnings: List[str] = []
    memo: Dict[SectionKey, bool] = {}

    def has_columns(section: SectionDef) -> bool:
        if section.key not in memo:
            memo[section.key] = bool(tree.columns(section)) or any(
                has_columns(child) for child in tree.children(section)
            )
        return memo[section.key]

    for section in tree.sections:
        if not has_columns(section):
            message = (
                f"Section '{section.name}' (level {section.level}) has no "
                "descendant columns"
            )
            LOGGER.warning(message)
            warnings.append(message)
        elif tree.columns(section) and tree.children(section):
            message = (
                f"Section '{section.name}' (level {section.level}) has columns "
                "and child sections; its columns are only filled for instances "
                "where no child section is present"
            )
            LOGGER.warning(message)
            warnings.append(message)
    return warnings


def build_schema(
    sections: Iterable[SectionDef],
    columns: Iterable[ColumnDef],
    *,
    source_entity: str,
    target_entity: str,
    container: Optional[SectionDef] = None,
) -> SchemaTree:
    """Validate metadata and index it into a :class:`SchemaTree`.

    Raises :class:`SchemaError` on the first inconsistency found.
    """
    section_list = [s for s in sections if container is None or s != container]
    column_list = list(columns)

    if container is not None and container.kind is not SectionKind.ARRAY:
        raise SchemaError(f"Container section '{container.name}' must be an Array")

    indexed = _index_sections(section_list)
    ambiguous = _ambiguous_names(section_list)
    children = _build_children(section_list, indexed, ambiguous)
    columns_by_section = _build_columns(column_list, section_list)

    tree = SchemaTree(
        source_entity=source_entity,
        target_entity=target_entity,
        sections=tuple(section_list),
        container=container,
        children_by_parent=children,
        columns_by_section=columns_by_section,
    )
    tree.warnings.extend(_pass_through_warnings(tree))
    LOGGER.debug(
        "Loaded schema %s/%s: %s sections, %s columns",
        source_entity,
        target_entity,
        len(section_list),
        len(column_list),
    )
    return tree
