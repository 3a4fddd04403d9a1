"""
Database access for the delivery stores.

Usage:
    from src.core.database import DatabaseAdapter, DatabaseConfig, ensure_schema

    db = DatabaseAdapter(DatabaseConfig())
    await db.connect()
    await ensure_schema(db, **settings.schema_tables())
"""

from .adapter import (
    DatabaseAdapter,
    DatabaseBackend,
    DatabaseConfig,
    affected_rows,
    to_sqlite_query,
)
from .schema import (
    ensure_schema,
    schema_statements,
    channel_table_name,
    validate_identifier,
    to_db_timestamp,
    from_db_timestamp,
)

__all__ = [
    "DatabaseAdapter",
    "DatabaseBackend",
    "DatabaseConfig",
    "affected_rows",
    "to_sqlite_query",
    "ensure_schema",
    "schema_statements",
    "channel_table_name",
    "validate_identifier",
    "to_db_timestamp",
    "from_db_timestamp",
]
