from __future__ import annotations

import asyncio
import logging
import time
from typing import Optional

from sqlalchemy import MetaData, Table, text
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

from .models import DatabaseConfig
from .tables import (build_mapping_table, build_raw_table, build_rule_table,
                     build_watermark_table)

LOGGER = logging.getLogger("ccda_flattener.db")


class DatabaseSession:
    """Manage the SQLAlchemy engine and the static table definitions."""

    def __init__(self, config: DatabaseConfig) -> None:
        self._config = config
        self._engine: Optional[AsyncEngine] = None
        self.metadata = MetaData()
        self.raw_table: Table = build_raw_table(self.metadata, config.raw_table)
        self.mapping_table: Table = build_mapping_table(self.metadata, config.mapping_table)
        self.rule_table: Table = build_rule_table(self.metadata, config.rule_table)
        self.watermark_table: Table = build_watermark_table(
            self.metadata, config.watermark_table
        )

    async def open(self) -> AsyncEngine:
        if self._engine is not None:
            return self._engine

        deadline = time.time() + self._config.connect_timeout
        attempts = 0
        while True:
            attempts += 1
            try:
                LOGGER.info("Creating SQLAlchemy engine (attempt %s)", attempts)
                async_engine = create_async_engine(self._config.url)
                async with async_engine.connect() as connection:
                    await connection.execute(text("SELECT 1"))
                self._engine = async_engine
                LOGGER.info("Connected to database")
                break
            except OperationalError as exc:
                if time.time() >= deadline:
                    raise RuntimeError("Database connection timed out") from exc
                LOGGER.warning("Database not ready yet (%s), retrying...", exc)
                await asyncio.sleep(min(2 * attempts, 10))

        if self._config.apply_schema:
            LOGGER.info("Applying database schema as requested by configuration")
            await self.ensure_schema()
        return self._engine

    async def ensure_schema(self) -> None:
        async with self.engine.begin() as conn:
            await conn.run_sync(self.metadata.create_all)

    @property
    def engine(self) -> AsyncEngine:
        if self._engine is None:
            raise RuntimeError("Engine not initialised; call open()")
        return self._engine

    async def dispose(self) -> None:
        if self._engine is not None:
            await self._engine.dispose()
        self._engine = None
