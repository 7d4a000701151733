"""Target database writer, SQL dialect builders and relational schema discovery."""

from .database_writer import (
    DEFAULT_CHUNK_SIZE,
    DatabaseWriter,
    DatabaseWriterError,
    InsertResult,
    RowError,
    UpsertResult,
)
from .dialects import (
    ON_CONFLICT_ERROR,
    ON_CONFLICT_SKIP,
    ON_CONFLICT_UPDATE,
    MySQLDialect,
    PostgreSQLDialect,
    SQLDialect,
    SQLiteDialect,
    SQLServerDialect,
    UnsupportedDialectError,
    get_dialect,
)
from .introspection import (
    ConnectionStringError,
    DatabaseColumn,
    DatabaseSchema,
    DatabaseTable,
    dialect_name_for,
    discover_schema,
    mask_connection_string,
    parse_connection_string,
)

__all__ = [
    "ConnectionStringError",
    "DEFAULT_CHUNK_SIZE",
    "DatabaseColumn",
    "DatabaseSchema",
    "DatabaseTable",
    "DatabaseWriter",
    "DatabaseWriterError",
    "InsertResult",
    "MySQLDialect",
    "ON_CONFLICT_ERROR",
    "ON_CONFLICT_SKIP",
    "ON_CONFLICT_UPDATE",
    "PostgreSQLDialect",
    "RowError",
    "SQLDialect",
    "SQLServerDialect",
    "SQLiteDialect",
    "UnsupportedDialectError",
    "UpsertResult",
    "dialect_name_for",
    "discover_schema",
    "get_dialect",
    "mask_connection_string",
    "parse_connection_string",
]
