from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from .flatten import ArrayPolicy
from .tables import (DEFAULT_MAPPING_TABLE, DEFAULT_RAW_TABLE,
                     DEFAULT_RULE_TABLE, DEFAULT_WATERMARK_TABLE)

DEFAULT_DB_CONNECT_TIMEOUT = 60.0
DEFAULT_CONTAINER_SECTION = "Components"
DEFAULT_SOURCE_ENTITY = "CCDA"
DEFAULT_FLATTEN_WORKERS = 4
DEFAULT_DOCUMENT_ID_PATH = "id._root"
DEFAULT_WRITE_BATCH_SIZE = 500


@dataclass(frozen=True)
class DatabaseConfig:
    url: str
    connect_timeout: float = DEFAULT_DB_CONNECT_TIMEOUT
    apply_schema: bool = False
    raw_table: str = DEFAULT_RAW_TABLE
    mapping_table: str = DEFAULT_MAPPING_TABLE
    rule_table: str = DEFAULT_RULE_TABLE
    watermark_table: str = DEFAULT_WATERMARK_TABLE


@dataclass(frozen=True)
class RunConfig:
    source_entity: str
    target_entity: str
    document_type: str
    target_component: str
    target_table: Optional[str] = None
    container_name: Optional[str] = DEFAULT_CONTAINER_SECTION
    array_policy: ArrayPolicy = ArrayPolicy.NORMALIZE
    max_workers: int = DEFAULT_FLATTEN_WORKERS


@dataclass(frozen=True)
class FlattenerConfig:
    database: DatabaseConfig
    run: Optional[RunConfig] = None
    mapping_file: Optional[str] = None
    document_id_path: str = DEFAULT_DOCUMENT_ID_PATH
    log_level: str = "INFO"
