from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path as FilePath
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from sqlalchemy import MetaData, Table, delete, insert, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine

from .assemble import FlatRow
from .errors import SinkError, SourceError
from .models import DEFAULT_WRITE_BATCH_SIZE
from .schema import ColumnDef
from .tables import ROW_KEY_COLUMNS, build_output_table
from .values import Scalar, Value, from_python, resolve
from .watermark import as_utc
from .xml_adapter import adapt_xml, parse_xml, xml_text

LOGGER = logging.getLogger("ccda_flattener.persistence")

FORMAT_XML = "xml"
FORMAT_JSON = "json"


@dataclass(frozen=True)
class RawDocument:
    """A raw document as handed to the pipeline.

    ``value`` is ``None`` when the stored payload could not be adapted;
    ``error`` then says why.
    """

    document_id: str
    value: Optional[Value]
    inserted_at: datetime
    file_name: Optional[str] = None
    error: Optional[str] = None


def adapt_payload(payload: str, payload_format: str) -> Value:
    if payload_format == FORMAT_JSON:
        try:
            return from_python(json.loads(payload))
        except json.JSONDecodeError as exc:
            raise SourceError(f"Malformed JSON document: {exc}") from exc
    if payload_format == FORMAT_XML:
        return adapt_xml(payload)
    raise SourceError(f"Unsupported payload format '{payload_format}'")


def _upsert(
    conn: AsyncConnection,
    table: Table,
    index_elements: Sequence[str],
    update_columns: Sequence[str],
):
    dialect = conn.dialect.name
    if dialect == "postgresql":
        stmt = pg_insert(table)
    elif dialect == "sqlite":
        stmt = sqlite_insert(table)
    else:
        return None
    return stmt.on_conflict_do_update(
        index_elements=[table.c[column] for column in index_elements],
        set_={column: stmt.excluded[column] for column in update_columns},
    )


class SqlDocumentSource:
    """Reads raw documents inserted after the cursor, oldest first."""

    def __init__(self, engine: AsyncEngine, table: Table) -> None:
        self._engine = engine
        self._table = table

    async def read(self, cursor: Optional[datetime]) -> List[RawDocument]:
        table = self._table
        stmt = select(
            table.c.document_id,
            table.c.file_name,
            table.c.payload_format,
            table.c.payload,
            table.c.inserted_at,
        ).order_by(table.c.inserted_at, table.c.id)
        if cursor is not None:
            stmt = stmt.where(table.c.inserted_at > cursor)

        try:
            async with self._engine.connect() as conn:
                result = await conn.execute(stmt)
                rows = result.all()
        except SQLAlchemyError as exc:
            raise SourceError(f"Cannot read raw documents from {table.name}: {exc}") from exc

        documents: List[RawDocument] = []
        for row in rows:
            inserted_at = as_utc(row.inserted_at)
            # SQLite hands back naive timestamps; anything older than the
            # cursor after normalisation is not part of this run.
            if cursor is not None and inserted_at <= cursor:
                continue
            try:
                value: Optional[Value] = adapt_payload(row.payload, row.payload_format)
                error = None
            except SourceError as exc:
                LOGGER.error("Document %s cannot be adapted: %s", row.document_id, exc)
                value, error = None, str(exc)
            documents.append(
                RawDocument(
                    document_id=row.document_id,
                    value=value,
                    inserted_at=inserted_at,
                    file_name=row.file_name,
                    error=error,
                )
            )
        LOGGER.info("Read %s raw documents after cursor %s", len(documents), cursor)
        return documents


class SqlSink:
    """Upserts flattened rows keyed by document, section and instance key."""

    def __init__(self, engine: AsyncEngine, batch_size: int = DEFAULT_WRITE_BATCH_SIZE) -> None:
        self._engine = engine
        self._metadata = MetaData()
        self._tables: Dict[str, Table] = {}
        self._batch_size = max(1, batch_size)

    async def prepare(self, target_table: str, columns: Sequence[ColumnDef]) -> Table:
        """Define (and create if missing) the output table for ``columns``."""
        table = self._tables.get(target_table)
        if table is None:
            table = build_output_table(self._metadata, target_table, columns)
            self._tables[target_table] = table
        try:
            async with self._engine.begin() as conn:
                await conn.run_sync(table.create, checkfirst=True)
        except SQLAlchemyError as exc:
            raise SinkError(f"Cannot create output table {target_table}: {exc}") from exc
        return table

    async def write(self, target_table: str, rows: Sequence[FlatRow]) -> int:
        table = self._tables.get(target_table)
        if table is None:
            raise SinkError(f"Output table {target_table} was not prepared")
        if not rows:
            return 0

        value_columns = [
            column.name
            for column in table.columns
            if column.name not in ROW_KEY_COLUMNS and column.name != "id"
        ]
        records = []
        for row in rows:
            record = row.record()
            unknown = set(record) - set(table.columns.keys())
            if unknown:
                raise SinkError(
                    f"Row for {row.section_name} has columns missing from "
                    f"{target_table}: {', '.join(sorted(unknown))}"
                )
            records.append(
                {column: record.get(column) for column in (*ROW_KEY_COLUMNS, *value_columns)}
            )

        try:
            async with self._engine.begin() as conn:
                stmt = _upsert(conn, table, ROW_KEY_COLUMNS, value_columns)
                for start in range(0, len(records), self._batch_size):
                    batch = records[start : start + self._batch_size]
                    if stmt is None:
                        await self._replace(conn, table, batch)
                    else:
                        await conn.execute(stmt, batch)
        except SQLAlchemyError as exc:
            raise SinkError(f"Cannot write {len(records)} rows to {target_table}: {exc}") from exc
        LOGGER.info("Wrote %s rows to %s", len(records), target_table)
        return len(records)

    @staticmethod
    async def _replace(
        conn: AsyncConnection, table: Table, batch: List[Dict[str, Any]]
    ) -> None:
        for record in batch:
            await conn.execute(
                delete(table).where(
                    *(table.c[column] == record[column] for column in ROW_KEY_COLUMNS)
                )
            )
        await conn.execute(insert(table), batch)


class SqlWatermarkStore:
    def __init__(self, engine: AsyncEngine, table: Table) -> None:
        self._engine = engine
        self._table = table

    async def get(self, document_type: str, target_table: str) -> Optional[datetime]:
        table = self._table
        stmt = select(table.c.last_processed_at).where(
            table.c.document_type == document_type,
            table.c.target_table == target_table,
        )
        async with self._engine.connect() as conn:
            result = await conn.execute(stmt)
            return as_utc(result.scalar_one_or_none())

    async def set(self, document_type: str, target_table: str, value: datetime) -> None:
        table = self._table
        row = {
            "document_type": document_type,
            "target_table": target_table,
            "last_processed_at": value,
            "updated_at": datetime.now(timezone.utc),
        }
        async with self._engine.begin() as conn:
            stmt = _upsert(
                conn,
                table,
                ("document_type", "target_table"),
                ("last_processed_at", "updated_at"),
            )
            if stmt is None:
                await conn.execute(
                    delete(table).where(
                        table.c.document_type == document_type,
                        table.c.target_table == target_table,
                    )
                )
                stmt = insert(table)
            await conn.execute(stmt, [row])


def _read_file(path: FilePath, payload_format: str) -> Tuple[str, Value]:
    """Read one file into its stored text and adapted value.

    XML is decoded by its own encoding declaration and stored as text
    without one; JSON files are read as UTF-8.
    """
    try:
        if payload_format == FORMAT_XML:
            root = parse_xml(path.read_bytes())
            return xml_text(root), adapt_xml(root)
        payload = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise SourceError(f"Cannot read {path}: {exc}") from exc
    except UnicodeDecodeError as exc:
        raise SourceError(f"Cannot decode {path}: {exc}") from exc
    return payload, adapt_payload(payload, payload_format)


def _document_id(value: Value, document_id_path: str, fallback: str) -> str:
    resolved = resolve(value, document_id_path)
    if isinstance(resolved, Scalar) and str(resolved.value).strip():
        return str(resolved.value).strip()
    return fallback


async def load_raw_documents(
    engine: AsyncEngine,
    table: Table,
    paths: Iterable[FilePath],
    document_id_path: str,
    now: Optional[datetime] = None,
) -> int:
    """Store XML/JSON files in the raw table, stamped with the load time."""
    inserted_at = now or datetime.now(timezone.utc)
    rows: List[Mapping[str, Any]] = []
    for path in paths:
        payload_format = FORMAT_JSON if path.suffix.lower() == ".json" else FORMAT_XML
        payload, value = _read_file(path, payload_format)
        rows.append(
            {
                "document_id": _document_id(value, document_id_path, path.stem),
                "file_name": path.name,
                "payload_format": payload_format,
                "payload": payload,
                "inserted_at": inserted_at,
            }
        )

    if not rows:
        return 0
    try:
        async with engine.begin() as conn:
            await conn.execute(insert(table), rows)
    except SQLAlchemyError as exc:
        raise SourceError(f"Cannot store raw documents in {table.name}: {exc}") from exc
    LOGGER.info("Loaded %s raw documents into %s", len(rows), table.name)
    return len(rows)
