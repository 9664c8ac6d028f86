"""SQLAlchemy table definitions for raw documents, metadata, watermarks and output."""

from __future__ import annotations

from hashlib import blake2b
from typing import Iterable

from sqlalchemy import (BigInteger, Boolean, Column, DateTime, Float, Index,
                        Integer, MetaData, PrimaryKeyConstraint, Table, Text,
                        UniqueConstraint)

from .schema import ColumnDef, ColumnType

MAX_IDENTIFIER_LENGTH = 63

DEFAULT_RAW_TABLE = "ccda_raw_documents"
DEFAULT_MAPPING_TABLE = "source_mappings_ccda"
DEFAULT_RULE_TABLE = "document_type_rules"
DEFAULT_WATERMARK_TABLE = "flatten_watermarks"

ROW_KEY_COLUMNS = ("source_document_id", "section_name", "instance_key")


def to_snake_case(value: str) -> str:
    result = []
    prev_lower = False
    for char in value:
        if char.isupper() and prev_lower:
            result.append("_")
        result.append(char.lower() if char.isalnum() else "_")
        prev_lower = char.islower() or char.isdigit()
    snake = "".join(result)
    while "__" in snake:
        snake = snake.replace("__", "_")
    return snake.strip("_")


def make_identifier(parts: Iterable[str]) -> str:
    """Join ``parts`` into a snake_case identifier that fits PostgreSQL limits."""
    base = "_".join(to_snake_case(part) for part in parts if part)
    if len(base) <= MAX_IDENTIFIER_LENGTH:
        return base or "unnamed"
    digest = blake2b(base.encode("utf-8"), digest_size=4).hexdigest()
    prefix_limit = MAX_IDENTIFIER_LENGTH - len(digest) - 1
    prefix = base[:prefix_limit].rstrip("_") or base[:prefix_limit]
    return f"{prefix}_{digest}"


def default_target_table(component: str, entity: str) -> str:
    return make_identifier(("T_Parsed", component, entity))


def map_type(column_type: ColumnType):
    if column_type is ColumnType.INTEGER:
        return BigInteger
    if column_type is ColumnType.DOUBLE:
        return Float
    if column_type is ColumnType.BOOLEAN:
        return Boolean
    if column_type is ColumnType.TIMESTAMP:
        return DateTime(timezone=True)
    return Text


def build_raw_table(metadata: MetaData, name: str = DEFAULT_RAW_TABLE) -> Table:
    return Table(
        name,
        metadata,
        Column("id", Integer, primary_key=True),
        Column("document_id", Text, nullable=False),
        Column("file_name", Text),
        Column("payload_format", Text, nullable=False, server_default="xml"),
        Column("payload", Text, nullable=False),
        Column("inserted_at", DateTime(timezone=True), nullable=False),
        Index(f"ix_{name}_inserted_at", "inserted_at"),
        comment="Raw CCDA documents awaiting flattening",
    )


def build_mapping_table(metadata: MetaData, name: str = DEFAULT_MAPPING_TABLE) -> Table:
    return Table(
        name,
        metadata,
        Column("id", Integer, primary_key=True),
        Column("Source_Entity_Name", Text, nullable=False),
        Column("Target_Entity_Name", Text),
        Column("Active_Indicator", Text, nullable=False, server_default="Y"),
        Column("Element_Type", Text, nullable=False),
        Column("Section_Name", Text, nullable=False),
        Column("Section_Path", Text),
        Column("Section_Type", Text),
        Column("Section_Level", Integer),
        Column("Parent_Section_Name", Text),
        Column("Section_keys", Text),
        Column("Column_Name", Text),
        Column("Column_Path", Text),
        Column("Path_Context", Text),
        Column("Column_Type", Text),
        Column("Column_Ordinal", Integer),
        Column("Transform_Name", Text),
        comment="Section and column metadata driving the flattener",
    )


def build_rule_table(metadata: MetaData, name: str = DEFAULT_RULE_TABLE) -> Table:
    return Table(
        name,
        metadata,
        Column("id", Integer, primary_key=True),
        Column("Source_Entity_Name", Text, nullable=False),
        Column("Document_Type", Text, nullable=False),
        Column("Rule_Field", Text, nullable=False, server_default="document"),
        Column("Rule_Path", Text),
        Column("Rule_Equals", Text),
        Column("Rule_Pattern", Text),
        Column("Rule_Order", Integer, nullable=False, server_default="0"),
        comment="Document-type identification rules",
    )


def build_watermark_table(metadata: MetaData, name: str = DEFAULT_WATERMARK_TABLE) -> Table:
    return Table(
        name,
        metadata,
        Column("document_type", Text, nullable=False),
        Column("target_table", Text, nullable=False),
        Column("last_processed_at", DateTime(timezone=True), nullable=False),
        Column("updated_at", DateTime(timezone=True), nullable=False),
        PrimaryKeyConstraint("document_type", "target_table"),
        comment="Last processed raw insert timestamp per document type and table",
    )


def build_output_table(
    metadata: MetaData, name: str, columns: Iterable[ColumnDef]
) -> Table:
    """Wide output table: row identity plus one column per ColumnDef."""
    sa_columns = [
        Column("id", Integer, primary_key=True),
        Column("source_document_id", Text, nullable=False),
        Column("section_name", Text, nullable=False),
        Column("instance_key", Text, nullable=False),
    ]
    for column in columns:
        sa_columns.append(Column(column.column_name, map_type(column.target_type)))
    return Table(
        name,
        metadata,
        *sa_columns,
        UniqueConstraint(*ROW_KEY_COLUMNS, name=make_identifier(("uq", name, "row"))),
    )
