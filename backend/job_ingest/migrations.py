"""Ordered, idempotent schema migrations applied on top of ``create_all``.

Each migration runs at most once per database; applied versions are
recorded in ``schema_migrations``.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable

import structlog
from sqlalchemy import inspect, select, text
from sqlalchemy.engine import Connection, Engine

from job_ingest.models import HeaderCacheEntry, SchemaMigration

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class Migration:
    version: int
    name: str
    apply: Callable[[Connection], None]


def _add_missing_columns(table: str, columns: dict[str, str]) -> Callable[[Connection], None]:
    def _apply(conn: Connection) -> None:
        existing = {col["name"] for col in inspect(conn).get_columns(table)}
        for name, ddl in columns.items():
            if name not in existing:
                conn.execute(text(f"ALTER TABLE {table} ADD COLUMN {name} {ddl}"))
                logger.info("schema_column_added", table=table, column=name)

    return _apply


def _create_header_cache_indexes(conn: Connection) -> None:
    for index in HeaderCacheEntry.__table__.indexes:
        index.create(bind=conn, checkfirst=True)


def _default_parse_status(conn: Connection) -> None:
    conn.execute(text("UPDATE emails SET parse_status = 'pending' WHERE parse_status IS NULL"))


# Columns that older installations of the ``emails`` table may lack.
_EMAILS_LEGACY_COLUMNS = {
    "raw_headers": "TEXT",
    "raw_html": "TEXT",
    "parsed_json": "TEXT",
    "parse_status": "VARCHAR(20) DEFAULT 'pending'",
    "parsed_at": "TIMESTAMP",
    "openai_model": "VARCHAR(100)",
    "uid": "INTEGER",
    "mailbox": "VARCHAR(200)",
    "created_at": "TIMESTAMP",
    "updated_at": "TIMESTAMP",
    "classification_confidence": "FLOAT",
    "classification_reason": "TEXT",
    "openai_prompt_tokens": "INTEGER",
    "openai_completion_tokens": "INTEGER",
    "openai_total_tokens": "INTEGER",
    "openai_cost_usd": "FLOAT",
}

MIGRATIONS: list[Migration] = [
    Migration(1, "emails_legacy_columns", _add_missing_columns("emails", _EMAILS_LEGACY_COLUMNS)),
    Migration(2, "header_cache_indexes", _create_header_cache_indexes),
    Migration(3, "emails_default_parse_status", _default_parse_status),
]


def apply_migrations(engine: Engine, migrations: list[Migration] | None = None) -> list[int]:
    """Apply pending migrations in version order. Returns the versions applied."""
    pending = sorted(migrations if migrations is not None else MIGRATIONS, key=lambda m: m.version)

    with engine.connect() as conn:
        applied = set(conn.execute(select(SchemaMigration.version)).scalars())

    newly_applied: list[int] = []
    for migration in pending:
        if migration.version in applied:
            continue
        with engine.begin() as conn:
            migration.apply(conn)
            conn.execute(
                SchemaMigration.__table__.insert().values(
                    version=migration.version, name=migration.name
                )
            )
        newly_applied.append(migration.version)
        logger.info("schema_migration_applied", version=migration.version, name=migration.name)
    return newly_applied
