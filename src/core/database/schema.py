"""
Table Schema

DDL for every durable table the gateway owns. Timestamps are stored as
fixed-width UTC ISO-8601 text so range comparisons behave identically on
SQLite and PostgreSQL.
"""

from __future__ import annotations

import logging
import re
from datetime import datetime, timezone
from typing import List, Optional

from .adapter import DatabaseAdapter

logger = logging.getLogger(__name__)

_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]{0,62}$")
_TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"


def validate_identifier(name: str) -> str:
    """Ensure a configured table name is a plain SQL identifier."""
    if not _IDENTIFIER.match(name or ""):
        raise ValueError(f"Invalid table name: {name!r}")
    return name


def to_db_timestamp(value: Optional[datetime]) -> Optional[str]:
    """Serialize a datetime to the sortable text form used in every table."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime(_TIMESTAMP_FORMAT)


def from_db_timestamp(value) -> Optional[datetime]:
    """Parse a stored timestamp back into an aware UTC datetime."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    return datetime.strptime(value, _TIMESTAMP_FORMAT).replace(tzinfo=timezone.utc)


def idempotency_ddl(table: str) -> List[str]:
    table = validate_identifier(table)
    return [
        f"""
        CREATE TABLE IF NOT EXISTS {table} (
            source_identifier TEXT NOT NULL,
            content_digest TEXT NOT NULL,
            outcome TEXT NOT NULL,
            processed_at TEXT NOT NULL,
            error_message TEXT,
            PRIMARY KEY (source_identifier, content_digest)
        )
        """,
        f"CREATE INDEX IF NOT EXISTS ix_{table}_processed_at ON {table} (processed_at)",
    ]


def outbox_ddl(table: str) -> List[str]:
    table = validate_identifier(table)
    return [
        f"""
        CREATE TABLE IF NOT EXISTS {table} (
            id TEXT PRIMARY KEY,
            message_type TEXT NOT NULL,
            payload TEXT NOT NULL,
            status TEXT NOT NULL,
            correlation_id TEXT NOT NULL,
            retry_count INTEGER NOT NULL DEFAULT 0,
            version INTEGER NOT NULL DEFAULT 0,
            created_at TEXT NOT NULL,
            dispatched_at TEXT,
            last_attempt_at TEXT,
            next_retry_at TEXT,
            abandon_at TEXT,
            error_message TEXT
        )
        """,
        f"CREATE INDEX IF NOT EXISTS ix_{table}_status ON {table} (status, next_retry_at)",
        f"CREATE INDEX IF NOT EXISTS ix_{table}_created_at ON {table} (created_at)",
    ]


def channel_ddl(table: str) -> List[str]:
    table = validate_identifier(table)
    return [
        f"""
        CREATE TABLE IF NOT EXISTS {table} (
            message_id TEXT PRIMARY KEY,
            body TEXT NOT NULL,
            pop_receipt TEXT NOT NULL,
            visible_at TEXT NOT NULL,
            inserted_at TEXT NOT NULL,
            dequeue_count INTEGER NOT NULL DEFAULT 0
        )
        """,
        f"CREATE INDEX IF NOT EXISTS ix_{table}_visible_at ON {table} (visible_at)",
    ]


def dead_letter_ddl(table: str) -> List[str]:
    table = validate_identifier(table)
    return [
        f"""
        CREATE TABLE IF NOT EXISTS {table} (
            id TEXT PRIMARY KEY,
            source TEXT NOT NULL,
            payload TEXT NOT NULL,
            correlation_id TEXT NOT NULL,
            retry_count INTEGER NOT NULL DEFAULT 0,
            original_timestamp TEXT,
            source_reference TEXT,
            failure_reason TEXT NOT NULL,
            last_attempt_at TEXT NOT NULL
        )
        """,
        f"CREATE INDEX IF NOT EXISTS ix_{table}_correlation_id ON {table} (correlation_id)",
    ]


def channel_table_name(queue_name: str) -> str:
    """Table backing a named message channel."""
    return validate_identifier(f"queue_{queue_name}")


def schema_statements(
    *,
    idempotency_table: str,
    outbox_table: str,
    dead_letter_table: str,
    queue_names: List[str],
) -> List[str]:
    """All CREATE statements, in order. Every statement is idempotent."""
    statements: List[str] = []
    statements.extend(idempotency_ddl(idempotency_table))
    statements.extend(outbox_ddl(outbox_table))
    statements.extend(dead_letter_ddl(dead_letter_table))
    for queue_name in queue_names:
        statements.extend(channel_ddl(channel_table_name(queue_name)))

    return statements


async def ensure_schema(
    db: DatabaseAdapter,
    *,
    idempotency_table: str,
    outbox_table: str,
    dead_letter_table: str,
    queue_names: List[str],
) -> None:
    """Create every table and index if missing."""
    statements = schema_statements(
        idempotency_table=idempotency_table,
        outbox_table=outbox_table,
        dead_letter_table=dead_letter_table,
        queue_names=queue_names,
    )
    for statement in statements:
        await db.execute(statement)

    logger.info(
        "Schema ensured: %s, %s, %s, queues=%s",
        idempotency_table, outbox_table, dead_letter_table, ",".join(queue_names)
    )
