"""Section/column metadata and identification rules from YAML or SQL."""

from __future__ import annotations

import logging
from pathlib import Path as FilePath
from typing import Any, Dict, List, Optional, Sequence, Union

import yaml
from pydantic import (BaseModel, ConfigDict, Field, ValidationError,
                      field_validator, model_validator)
from sqlalchemy import Table, select
from sqlalchemy.ext.asyncio import AsyncEngine

from .errors import SchemaError
from .identify import FIELD_DOCUMENT, FIELD_FILE_NAME, IdentificationRule
from .schema import (ColumnDef, ColumnType, PathContext, SchemaTree,
                     SectionDef, SectionKind, build_schema)
from .values import parse_path

LOGGER = logging.getLogger("ccda_flattener.metadata")

ELEMENT_SECTION = "Section"
ELEMENT_COLUMN = "Column"


class MappingRow(BaseModel):
    """One row of the source mapping table (a section or a column)."""

    source_entity: str = Field(alias="Source_Entity_Name")
    target_entity: Optional[str] = Field(default=None, alias="Target_Entity_Name")
    active: str = Field(default="Y", alias="Active_Indicator")
    element_type: str = Field(alias="Element_Type")
    section_name: str = Field(alias="Section_Name")
    section_path: Optional[str] = Field(default=None, alias="Section_Path")
    section_type: Optional[SectionKind] = Field(default=None, alias="Section_Type")
    section_level: Optional[int] = Field(default=None, alias="Section_Level")
    parent_section_name: Optional[str] = Field(default=None, alias="Parent_Section_Name")
    section_keys: Optional[str] = Field(default=None, alias="Section_keys")
    column_name: Optional[str] = Field(default=None, alias="Column_Name")
    column_path: Optional[str] = Field(default=None, alias="Column_Path")
    path_context: Optional[PathContext] = Field(default=None, alias="Path_Context")
    column_type: ColumnType = Field(default=ColumnType.STRING, alias="Column_Type")
    column_ordinal: Optional[int] = Field(default=None, alias="Column_Ordinal")
    transform_name: Optional[str] = Field(default=None, alias="Transform_Name")

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    @field_validator("element_type", mode="before")
    @classmethod
    def _element_type(cls, value: Any) -> Any:
        return value.strip().capitalize() if isinstance(value, str) else value

    @field_validator("section_type", mode="before")
    @classmethod
    def _section_type(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip().capitalize() or None
        return value

    @field_validator("path_context", mode="before")
    @classmethod
    def _path_context(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip().lower() or None
        return value

    @field_validator("column_type", mode="before")
    @classmethod
    def _column_type(cls, value: Any) -> Any:
        if value is None or (isinstance(value, str) and not value.strip()):
            return ColumnType.STRING
        return value.strip().lower() if isinstance(value, str) else value

    @field_validator("parent_section_name", "section_keys", "transform_name", mode="before")
    @classmethod
    def _blank_to_none(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @model_validator(mode="after")
    def _check_element(self) -> "MappingRow":
        if self.element_type == ELEMENT_SECTION:
            if self.section_type is None or self.section_level is None:
                raise ValueError(
                    f"Section '{self.section_name}' needs Section_Type and Section_Level"
                )
        elif self.element_type == ELEMENT_COLUMN:
            if not self.column_name:
                raise ValueError(f"Column row of '{self.section_name}' has no Column_Name")
            if self.path_context is None:
                raise ValueError(f"Column '{self.column_name}' needs an explicit Path_Context")
        else:
            raise ValueError(f"Unknown Element_Type '{self.element_type}'")
        return self

    @property
    def is_active(self) -> bool:
        return self.active.strip().upper() == "Y"

    def to_section(self) -> SectionDef:
        keys = tuple(
            key.strip() for key in (self.section_keys or "").split(",") if key.strip()
        )
        return SectionDef(
            name=self.section_name,
            path=parse_path(self.section_path),
            kind=self.section_type,
            level=self.section_level,
            parent_name=self.parent_section_name,
            join_keys=keys,
        )

    def to_column(self, position: int) -> ColumnDef:
        return ColumnDef(
            section_name=self.section_name,
            column_name=self.column_name,
            path=parse_path(self.column_path),
            path_context=self.path_context,
            ordinal=self.column_ordinal if self.column_ordinal is not None else position,
            target_type=self.column_type,
            transform=self.transform_name,
        )


class IdentificationRuleRow(BaseModel):
    source_entity: str = Field(alias="Source_Entity_Name")
    document_type: str = Field(alias="Document_Type")
    field: str = Field(default=FIELD_DOCUMENT, alias="Rule_Field")
    path: Optional[str] = Field(default=None, alias="Rule_Path")
    equals: Optional[str] = Field(default=None, alias="Rule_Equals")
    pattern: Optional[str] = Field(default=None, alias="Rule_Pattern")
    order: int = Field(default=0, alias="Rule_Order")

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    @field_validator("field")
    @classmethod
    def _known_field(cls, value: str) -> str:
        if value not in {FIELD_DOCUMENT, FIELD_FILE_NAME}:
            raise ValueError(f"Rule_Field must be '{FIELD_DOCUMENT}' or '{FIELD_FILE_NAME}'")
        return value

    def to_rule(self) -> IdentificationRule:
        return IdentificationRule(
            document_type=self.document_type,
            path=parse_path(self.path),
            equals=self.equals,
            pattern=self.pattern,
            field=self.field,
        )


def _validate_rows(model, raw_rows: Sequence[Dict[str, Any]]) -> List[Any]:
    rows = []
    for index, raw in enumerate(raw_rows):
        try:
            rows.append(model.model_validate(raw))
        except ValidationError as exc:
            raise SchemaError(f"Invalid metadata row #{index}: {exc}") from exc
    return rows


class YamlMetadataStore:
    """Metadata kept in a YAML file with ``mappings`` and ``document_types`` lists."""

    def __init__(self, path: Union[str, FilePath]) -> None:
        self._path = FilePath(path)
        self._data: Optional[Dict[str, Any]] = None

    def _load(self) -> Dict[str, Any]:
        if self._data is None:
            try:
                with self._path.open("r", encoding="utf-8") as fh:
                    data = yaml.safe_load(fh) or {}
            except (OSError, yaml.YAMLError) as exc:
                raise SchemaError(f"Cannot read metadata file {self._path}: {exc}") from exc
            if not isinstance(data, dict):
                raise SchemaError(f"Metadata file {self._path} must contain a mapping")
            self._data = data
        return self._data

    async def mapping_rows(self, source_entity: str) -> List[MappingRow]:
        rows = _validate_rows(MappingRow, self._load().get("mappings") or [])
        return [row for row in rows if row.source_entity == source_entity]

    async def identification_rules(self, source_entity: str) -> List[IdentificationRule]:
        rows = _validate_rows(IdentificationRuleRow, self._load().get("document_types") or [])
        selected = [row for row in rows if row.source_entity == source_entity]
        return [row.to_rule() for row in sorted(selected, key=lambda r: r.order)]


class SqlMetadataStore:
    """Metadata read from the mapping and rule tables."""

    def __init__(self, engine: AsyncEngine, mapping_table: Table, rule_table: Table) -> None:
        self._engine = engine
        self._mapping_table = mapping_table
        self._rule_table = rule_table

    async def mapping_rows(self, source_entity: str) -> List[MappingRow]:
        table = self._mapping_table
        stmt = (
            select(table)
            .where(table.c.Source_Entity_Name == source_entity)
            .order_by(table.c.id)
        )
        async with self._engine.connect() as conn:
            result = await conn.execute(stmt)
            raw_rows = [dict(row._mapping) for row in result]
        return _validate_rows(MappingRow, raw_rows)

    async def identification_rules(self, source_entity: str) -> List[IdentificationRule]:
        table = self._rule_table
        stmt = (
            select(table)
            .where(table.c.Source_Entity_Name == source_entity)
            .order_by(table.c.Rule_Order, table.c.id)
        )
        async with self._engine.connect() as conn:
            result = await conn.execute(stmt)
            raw_rows = [dict(row._mapping) for row in result]
        return [row.to_rule() for row in _validate_rows(IdentificationRuleRow, raw_rows)]


def schema_from_rows(
    rows: Sequence[MappingRow],
    source_entity: str,
    target_entity: str,
    container_name: Optional[str] = None,
) -> SchemaTree:
    """Select the active rows of ``target_entity`` and build its schema tree.

    The container section is looked up among all section rows of the source
    entity, whatever their target entity.
    """
    selected = [
        row
        for row in rows
        if row.source_entity == source_entity
        and row.target_entity == target_entity
        and row.is_active
    ]
    sections = [row.to_section() for row in selected if row.element_type == ELEMENT_SECTION]
    columns = [
        row.to_column(position)
        for position, row in enumerate(r for r in selected if r.element_type == ELEMENT_COLUMN)
    ]

    container = None
    if container_name:
        candidates = [
            row
            for row in rows
            if row.element_type == ELEMENT_SECTION and row.section_name == container_name
        ]
        if not candidates:
            raise SchemaError(
                f"Container section '{container_name}' is not declared for {source_entity}"
            )
        container = candidates[0].to_section()
        sections = [section for section in sections if section.name != container_name]

    if not sections:
        raise SchemaError(f"No active sections for {source_entity}/{target_entity}")

    return build_schema(
        sections,
        columns,
        source_entity=source_entity,
        target_entity=target_entity,
        container=container,
    )


async def load_schema(
    store,
    source_entity: str,
    target_entity: str,
    container_name: Optional[str] = None,
) -> SchemaTree:
    rows = await store.mapping_rows(source_entity)
    schema = schema_from_rows(rows, source_entity, target_entity, container_name)
    LOGGER.info(
        "Schema %s/%s: %s sections, %s columns",
        source_entity,
        target_entity,
        len(schema.sections),
        len(schema.all_columns()),
    )
    return schema
