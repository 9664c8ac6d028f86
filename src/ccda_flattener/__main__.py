from __future__ import annotations

import argparse
import asyncio
import sys
from pathlib import Path
from typing import List, Optional, Sequence

from rich.console import Console

from .config import load_config
from .db_connector import DatabaseSession
from .errors import SchemaError, SinkError, SourceError
from .logging_utils import get_logger, setup_logging
from .metadata import SqlMetadataStore, YamlMetadataStore
from .models import FlattenerConfig
from .persistence import (SqlDocumentSource, SqlSink, SqlWatermarkStore,
                          load_raw_documents)
from .pipeline import RunSummary, run_flattening

console = Console()
LOGGER = get_logger("ccda_flattener.cli")

RAW_SUFFIXES = {".xml", ".json"}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="ccda-flattener",
        description="Flatten CCDA documents into tables using declarative section metadata.",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("init-db", help="Create the raw, metadata and watermark tables")

    load_raw = subparsers.add_parser("load-raw", help="Store XML/JSON documents in the raw table")
    load_raw.add_argument("paths", nargs="+", type=Path, help="Files or directories")

    run = subparsers.add_parser("run", help="Flatten new documents into a target table")
    run.add_argument("--source-entity", dest="source_entity")
    run.add_argument("--target-entity", dest="target_entity")
    run.add_argument("--document-type", dest="document_type")
    run.add_argument("--component", dest="target_component")
    run.add_argument("--target-table", dest="target_table")
    run.add_argument("--container", dest="container_name")
    run.add_argument("--array-policy", dest="array_policy", choices=["normalize", "anomaly"])
    run.add_argument("--workers", dest="max_workers")
    return parser


def collect_paths(paths: Sequence[Path]) -> List[Path]:
    collected: List[Path] = []
    for path in paths:
        if path.is_dir():
            collected.extend(
                sorted(p for p in path.rglob("*") if p.suffix.lower() in RAW_SUFFIXES)
            )
        else:
            collected.append(path)
    return collected


async def init_db(config: FlattenerConfig) -> None:
    session = DatabaseSession(config.database)
    try:
        await session.open()
        await session.ensure_schema()
        LOGGER.info("Database schema is in place")
    finally:
        await session.dispose()


async def load_raw(config: FlattenerConfig, paths: Sequence[Path]) -> int:
    session = DatabaseSession(config.database)
    try:
        engine = await session.open()
        return await load_raw_documents(
            engine, session.raw_table, collect_paths(paths), config.document_id_path
        )
    finally:
        await session.dispose()


async def run(config: FlattenerConfig) -> RunSummary:
    session = DatabaseSession(config.database)
    try:
        engine = await session.open()
        if config.mapping_file:
            metadata = YamlMetadataStore(config.mapping_file)
        else:
            metadata = SqlMetadataStore(engine, session.mapping_table, session.rule_table)
        return await run_flattening(
            config.run,
            metadata=metadata,
            source=SqlDocumentSource(engine, session.raw_table),
            sink=SqlSink(engine),
            watermarks=SqlWatermarkStore(engine, session.watermark_table),
            console=console,
        )
    finally:
        await session.dispose()


def main(argv: Optional[Sequence[str]] = None) -> None:
    args = build_parser().parse_args(argv)
    overrides = {
        key: value
        for key, value in vars(args).items()
        if key not in {"command", "paths"} and value is not None
    }
    try:
        config = load_config(with_run=args.command == "run", **overrides)
    except Exception as exc:  # pragma: no cover - guard for CLI usage
        setup_logging(console=console)
        LOGGER.error("Configuration error: %s", exc)
        print(f"Configuration error: {exc}", file=sys.stderr)
        sys.exit(1)
    setup_logging(config.log_level, console=console)

    try:
        if args.command == "init-db":
            asyncio.run(init_db(config))
        elif args.command == "load-raw":
            count = asyncio.run(load_raw(config, args.paths))
            console.print(f"Loaded {count} raw documents")
        else:
            summary = asyncio.run(run(config))
            console.print(summary.render())
            if summary.diagnostics.total:
                console.print(summary.diagnostics.render())
    except SchemaError as exc:
        LOGGER.error("Metadata error: %s", exc)
        print(f"Metadata error: {exc}", file=sys.stderr)
        sys.exit(2)
    except (SourceError, SinkError) as exc:
        LOGGER.exception("Storage error")
        print(f"Storage error: {exc}", file=sys.stderr)
        sys.exit(3)
    except Exception as exc:  # pragma: no cover - guard for CLI usage
        LOGGER.exception("Flattening failed")
        print(f"Flattening failed: {exc}", file=sys.stderr)
        sys.exit(4)


if __name__ == "__main__":
    main()
