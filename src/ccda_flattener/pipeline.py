"""One incremental flattening run: read, flatten in parallel, write, advance."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Mapping, Optional, Protocol, Sequence

from rich.console import Console
from rich.table import Table

from .assemble import FlatRow, Transform, assemble, validate_transforms
from .diagnostics import Diagnostics
from .flatten import ArrayPolicy, flatten
from .identify import DocumentTypeIdentifier
from .metadata import load_schema
from .models import RunConfig
from .persistence import RawDocument
from .schema import ColumnDef, SchemaTree
from .tables import default_target_table
from .values import Value
from .watermark import WatermarkCoordinator, WatermarkStore, cursor_after

LOGGER = logging.getLogger("ccda_flattener.pipeline")


class DocumentSource(Protocol):
    async def read(self, cursor: Optional[datetime]) -> Sequence[RawDocument]:
        ...


class Sink(Protocol):
    async def prepare(self, target_table: str, columns: Sequence[ColumnDef]) -> object:
        ...

    async def write(self, target_table: str, rows: Sequence[FlatRow]) -> int:
        ...


@dataclass
class DocumentResult:
    document_id: str
    rows: List[FlatRow]
    diagnostics: Diagnostics


@dataclass
class RunSummary:
    document_type: str
    target_table: str
    documents_read: int = 0
    documents_flattened: int = 0
    skipped_unknown: int = 0
    skipped_other_type: int = 0
    skipped_unreadable: int = 0
    rows_written: int = 0
    cursor_before: Optional[datetime] = None
    cursor_after: Optional[datetime] = None
    diagnostics: Diagnostics = field(default_factory=Diagnostics)

    def render(self) -> Table:
        table = Table(title=f"{self.document_type} -> {self.target_table}")
        table.add_column("Metric")
        table.add_column("Value", justify="right")
        for label, value in (
            ("documents read", self.documents_read),
            ("documents flattened", self.documents_flattened),
            ("skipped (unknown type)", self.skipped_unknown),
            ("skipped (other type)", self.skipped_other_type),
            ("skipped (unreadable)", self.skipped_unreadable),
            ("rows written", self.rows_written),
            ("anomalies + coercion failures", self.diagnostics.total),
            ("cursor before", self.cursor_before),
            ("cursor after", self.cursor_after),
        ):
            table.add_row(label, "-" if value is None else str(value))
        return table


def flatten_document(
    document_id: str,
    root_value: Value,
    schema: SchemaTree,
    target_component: str,
    *,
    transforms: Optional[Mapping[str, Transform]] = None,
    array_policy: ArrayPolicy = ArrayPolicy.NORMALIZE,
) -> DocumentResult:
    """Pure per-document step; safe to run on any worker thread."""
    diagnostics = Diagnostics()
    instances = flatten(
        document_id,
        root_value,
        schema,
        target_component,
        diagnostics=diagnostics,
        array_policy=array_policy,
    )
    rows = assemble(
        instances,
        schema,
        document_root=root_value,
        transforms=transforms,
        diagnostics=diagnostics,
    )
    return DocumentResult(document_id, rows, diagnostics)


async def _flatten_all(
    documents: Sequence[RawDocument],
    schema: SchemaTree,
    config: RunConfig,
    transforms: Optional[Mapping[str, Transform]],
) -> List[DocumentResult]:
    semaphore = asyncio.Semaphore(max(1, config.max_workers))

    async def work(document: RawDocument) -> DocumentResult:
        async with semaphore:
            return await asyncio.to_thread(
                flatten_document,
                document.document_id,
                document.value,
                schema,
                config.target_component,
                transforms=transforms,
                array_policy=config.array_policy,
            )

    tasks = [asyncio.create_task(work(document)) for document in documents]
    try:
        return list(await asyncio.gather(*tasks))
    except BaseException:
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        raise


async def run_flattening(
    config: RunConfig,
    *,
    metadata,
    source: DocumentSource,
    sink: Sink,
    watermarks: WatermarkStore,
    identifier: Optional[DocumentTypeIdentifier] = None,
    transforms: Optional[Mapping[str, Transform]] = None,
    console: Optional[Console] = None,
) -> RunSummary:
    """Flatten every new document of ``config.document_type`` into its target table.

    The watermark only advances after the sink accepted the rows; any failure
    before that leaves it untouched so a retry reprocesses the same documents.
    """
    active_console = console or Console()

    schema = await load_schema(
        metadata, config.source_entity, config.target_entity, config.container_name
    )
    schema.root(config.target_component)
    validate_transforms(schema, transforms)
    if identifier is None:
        identifier = DocumentTypeIdentifier(
            await metadata.identification_rules(config.source_entity)
        )

    target_table = config.target_table or default_target_table(
        config.target_component, config.target_entity
    )
    summary = RunSummary(document_type=config.document_type, target_table=target_table)
    coordinator = WatermarkCoordinator(watermarks)
    summary.cursor_before = await coordinator.read_cursor(config.document_type, target_table)

    await sink.prepare(target_table, schema.all_columns())

    with active_console.status("Reading raw documents..."):
        documents = await source.read(summary.cursor_before)
    summary.documents_read = len(documents)

    selected: List[RawDocument] = []
    for document in documents:
        if document.value is None:
            summary.skipped_unreadable += 1
            continue
        document_type = identifier.identify(document.value, document.file_name)
        if document_type is None:
            LOGGER.debug("Skipping %s: unknown document type", document.document_id)
            summary.skipped_unknown += 1
        elif document_type != config.document_type:
            summary.skipped_other_type += 1
        else:
            selected.append(document)

    with active_console.status(f"Flattening {len(selected)} documents..."):
        results = await _flatten_all(selected, schema, config, transforms)

    rows: List[FlatRow] = []
    for result in results:
        rows.extend(result.rows)
        summary.diagnostics.merge(result.diagnostics)
    summary.documents_flattened = len(results)

    summary.rows_written = await sink.write(target_table, rows)

    new_cursor = cursor_after(document.inserted_at for document in documents)
    if new_cursor is not None:
        summary.cursor_after = await coordinator.advance(
            config.document_type, target_table, new_cursor
        )
    else:
        summary.cursor_after = summary.cursor_before

    LOGGER.info(
        "Run %s -> %s completed: %s documents read, %s flattened, %s rows written",
        config.document_type,
        target_table,
        summary.documents_read,
        summary.documents_flattened,
        summary.rows_written,
    )
    if summary.diagnostics.total:
        LOGGER.warning(
            "%s anomalies and coercion failures recorded: %s",
            summary.diagnostics.total,
            summary.diagnostics.summary(),
        )
    return summary
