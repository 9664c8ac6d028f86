"""Configuration loading for the CCDA flattener."""

from __future__ import annotations

import os
from typing import Optional

from dotenv import load_dotenv

from .flatten import ArrayPolicy
from .models import (DEFAULT_CONTAINER_SECTION, DEFAULT_DB_CONNECT_TIMEOUT,
                     DEFAULT_DOCUMENT_ID_PATH, DEFAULT_FLATTEN_WORKERS,
                     DEFAULT_SOURCE_ENTITY, DatabaseConfig, FlattenerConfig,
                     RunConfig)
from .tables import (DEFAULT_MAPPING_TABLE, DEFAULT_RAW_TABLE,
                     DEFAULT_RULE_TABLE, DEFAULT_WATERMARK_TABLE)


def _int(value: Optional[str], default: int) -> int:
    try:
        return int(value) if value is not None else default
    except ValueError:
        return default


def _float(value: Optional[str], default: float) -> float:
    try:
        return float(value) if value is not None else default
    except ValueError:
        return default


def _bool(value: Optional[str], default: bool = False) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _database_url() -> str:
    url = os.getenv("DATABASE_URL")
    if url:
        return url
    pg_user = os.getenv("POSTGRES_USER")
    pg_password = os.getenv("POSTGRES_PASSWORD")
    pg_db = os.getenv("POSTGRES_DB")
    pg_host = os.getenv("POSTGRES_HOST", os.getenv("PGHOST", "localhost"))
    pg_port = os.getenv("POSTGRES_PORT", os.getenv("PGPORT", "5432"))
    if not (pg_user and pg_password and pg_db):
        raise RuntimeError(
            "DATABASE_URL or POSTGRES_USER, POSTGRES_PASSWORD and POSTGRES_DB "
            "environment variables are required"
        )
    return f"postgresql+asyncpg://{pg_user}:{pg_password}@{pg_host}:{pg_port}/{pg_db}"


def _array_policy(value: Optional[str]) -> ArrayPolicy:
    if not value:
        return ArrayPolicy.NORMALIZE
    try:
        return ArrayPolicy(value.strip().lower())
    except ValueError as exc:
        raise RuntimeError(
            f"ARRAY_POLICY must be one of {[policy.value for policy in ArrayPolicy]}"
        ) from exc


def load_run_config(**overrides: Optional[str]) -> RunConfig:
    """Build the run settings from the environment, letting ``overrides`` win."""

    def pick(name: str, env: str, default: Optional[str] = None) -> Optional[str]:
        value = overrides.get(name)
        return value if value is not None else os.getenv(env, default)

    target_entity = pick("target_entity", "TARGET_ENTITY")
    document_type = pick("document_type", "DOCUMENT_TYPE")
    target_component = pick("target_component", "TARGET_COMPONENT")
    missing = [
        env
        for env, value in (
            ("TARGET_ENTITY", target_entity),
            ("DOCUMENT_TYPE", document_type),
            ("TARGET_COMPONENT", target_component),
        )
        if not value
    ]
    if missing:
        raise RuntimeError(f"Missing run settings: {', '.join(missing)}")

    # An explicitly empty CONTAINER_SECTION disables the container level.
    container = pick("container_name", "CONTAINER_SECTION", DEFAULT_CONTAINER_SECTION)

    return RunConfig(
        source_entity=pick("source_entity", "SOURCE_ENTITY", DEFAULT_SOURCE_ENTITY),
        target_entity=target_entity,
        document_type=document_type,
        target_component=target_component,
        target_table=pick("target_table", "TARGET_TABLE") or None,
        container_name=container or None,
        array_policy=_array_policy(pick("array_policy", "ARRAY_POLICY")),
        max_workers=max(
            1, _int(pick("max_workers", "FLATTEN_WORKERS"), DEFAULT_FLATTEN_WORKERS)
        ),
    )


def load_config(with_run: bool = False, **overrides: Optional[str]) -> FlattenerConfig:
    """Load configuration from environment variables (and a ``.env`` file)."""
    load_dotenv()

    database = DatabaseConfig(
        url=_database_url(),
        connect_timeout=_float(
            os.getenv("DATABASE_CONNECT_TIMEOUT"), DEFAULT_DB_CONNECT_TIMEOUT
        ),
        apply_schema=_bool(os.getenv("DATABASE_APPLY_SCHEMA")),
        raw_table=os.getenv("RAW_TABLE", DEFAULT_RAW_TABLE),
        mapping_table=os.getenv("MAPPING_TABLE", DEFAULT_MAPPING_TABLE),
        rule_table=os.getenv("RULE_TABLE", DEFAULT_RULE_TABLE),
        watermark_table=os.getenv("WATERMARK_TABLE", DEFAULT_WATERMARK_TABLE),
    )
    return FlattenerConfig(
        database=database,
        run=load_run_config(**overrides) if with_run else None,
        mapping_file=os.getenv("MAPPING_FILE") or None,
        document_id_path=os.getenv("DOCUMENT_ID_PATH", DEFAULT_DOCUMENT_ID_PATH),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
    )
