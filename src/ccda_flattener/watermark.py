"""Incremental read cursors per (document type, target table)."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Iterable, Optional, Protocol

LOGGER = logging.getLogger("ccda_flattener.watermark")


class WatermarkStore(Protocol):
    async def get(self, document_type: str, target_table: str) -> Optional[datetime]:
        ...

    async def set(self, document_type: str, target_table: str, value: datetime) -> None:
        ...


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Treat naive timestamps as UTC so they compare with aware ones."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def cursor_after(timestamps: Iterable[datetime]) -> Optional[datetime]:
    """The cursor a run should record: the newest insert timestamp it read."""
    normalised = [as_utc(value) for value in timestamps if value is not None]
    return max(normalised) if normalised else None


class WatermarkCoordinator:
    """Read-before / advance-after access to a :class:`WatermarkStore`."""

    def __init__(self, store: WatermarkStore) -> None:
        self._store = store

    async def read_cursor(self, document_type: str, target_table: str) -> Optional[datetime]:
        cursor = as_utc(await self._store.get(document_type, target_table))
        LOGGER.debug("Cursor for %s/%s: %s", document_type, target_table, cursor)
        return cursor

    async def advance(
        self, document_type: str, target_table: str, new_cursor: datetime
    ) -> datetime:
        """Record ``new_cursor`` unless the stored cursor is already newer."""
        proposed = as_utc(new_cursor)
        current = await self.read_cursor(document_type, target_table)
        if current is not None and current >= proposed:
            LOGGER.info(
                "Watermark %s/%s stays at %s", document_type, target_table, current
            )
            return current
        await self._store.set(document_type, target_table, proposed)
        LOGGER.info(
            "Watermark %s/%s advanced to %s", document_type, target_table, proposed
        )
        return proposed
