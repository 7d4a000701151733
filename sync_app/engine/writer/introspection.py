"""
Relational schema discovery and target connection string handling.

The discovered schema only feeds mapping validation; writes trust the column
list supplied by the caller.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Iterable, Sequence
from urllib.parse import parse_qsl, unquote, urlsplit

from sqlalchemy import inspect
from sqlalchemy.engine import URL, Engine, make_url
from sqlalchemy.exc import CompileError

DIALECT_SQLSERVER = "sqlserver"
DIALECT_POSTGRESQL = "postgresql"
DIALECT_MYSQL = "mysql"
DIALECT_SQLITE = "sqlite"

DEFAULT_DRIVERS = {
    DIALECT_SQLSERVER: "mssql+pyodbc",
    DIALECT_POSTGRESQL: "postgresql+psycopg",
    DIALECT_MYSQL: "mysql+pymysql",
}

_URL_PASSWORD = re.compile(r"(://[^:/@]+:)([^@]+)(@)", re.IGNORECASE)
_ADO_PASSWORD = re.compile(r"(password|pwd)\s*=\s*[^;]+", re.IGNORECASE)


class ConnectionStringError(ValueError):
    """Raised when a target connection string is not in a recognised format."""


@dataclass(frozen=True)
class DatabaseColumn:
    name: str
    type: str
    nullable: bool = True
    is_primary_key: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "type": self.type,
            "nullable": self.nullable,
            "is_primary_key": self.is_primary_key,
        }


@dataclass(frozen=True)
class DatabaseTable:
    name: str
    columns: Sequence[DatabaseColumn]
    schema: str | None = None

    @property
    def qualified_name(self) -> str:
        return f"{self.schema}.{self.name}" if self.schema else self.name

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "schema": self.schema,
            "columns": [column.to_dict() for column in self.columns],
        }


@dataclass(frozen=True)
class DatabaseSchema:
    tables: Sequence[DatabaseTable]
    discovered_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict[str, Any]:
        return {
            "tables": [table.to_dict() for table in self.tables],
            "discovered_at": self.discovered_at.isoformat(),
        }


def dialect_name_for(engine_or_url: Engine | URL | str) -> str:
    """Map a SQLAlchemy engine/URL to one of the writer dialect names."""
    if isinstance(engine_or_url, Engine):
        backend = engine_or_url.dialect.name
    else:
        backend = make_url(engine_or_url).get_backend_name()
    if backend == "mssql":
        return DIALECT_SQLSERVER
    if backend in ("postgresql", DIALECT_MYSQL, DIALECT_SQLITE):
        return backend
    if backend == "mariadb":
        return DIALECT_MYSQL
    raise ConnectionStringError(f"Unsupported database backend '{backend}'")


def discover_schema(engine: Engine, *, schemas: Iterable[str | None] = (None,)) -> DatabaseSchema:
    """Introspect base tables, column types, nullability and primary keys."""

    inspector = inspect(engine)
    tables: list[DatabaseTable] = []
    for schema in schemas:
        for table_name in sorted(inspector.get_table_names(schema=schema)):
            pk_columns = set((inspector.get_pk_constraint(table_name, schema=schema) or {}).get("constrained_columns") or ())
            columns = tuple(
                DatabaseColumn(
                    name=column["name"],
                    type=_render_type(column["type"], engine),
                    nullable=bool(column.get("nullable", True)),
                    is_primary_key=column["name"] in pk_columns,
                )
                for column in inspector.get_columns(table_name, schema=schema)
            )
            tables.append(DatabaseTable(name=table_name, schema=schema, columns=columns))
    return DatabaseSchema(tables=tuple(tables))


def _render_type(column_type: Any, engine: Engine) -> str:
    try:
        return column_type.compile(dialect=engine.dialect).lower()
    except CompileError:
        return type(column_type).__name__.lower()


def parse_connection_string(connection_string: str, *, drivers: dict[str, str] | None = None) -> tuple[str, URL]:
    """
    Recognise a target connection string and convert it to a SQLAlchemy URL.

    Accepts ``mssql://``, ``sqlserver://``, ``jdbc:sqlserver://``, ADO.NET
    ``Server=...;Database=...`` strings, ``postgres(ql)://``, ``mysql://`` and
    native SQLAlchemy URLs. Returns ``(dialect_name, url)``.
    """

    drivers = {**DEFAULT_DRIVERS, **(drivers or {})}
    text = (connection_string or "").strip()
    lowered = text.lower()
    if not text:
        raise ConnectionStringError("Connection string is empty.")

    if lowered.startswith(("mssql://", "sqlserver://")):
        return DIALECT_SQLSERVER, _url_from_uri(text, drivers[DIALECT_SQLSERVER], default_port=1433)
    if lowered.startswith("jdbc:sqlserver://"):
        return DIALECT_SQLSERVER, _url_from_jdbc(text[len("jdbc:") :], drivers[DIALECT_SQLSERVER])
    if lowered.startswith(("postgresql://", "postgres://")):
        return DIALECT_POSTGRESQL, _url_from_uri(text, drivers[DIALECT_POSTGRESQL], default_port=5432)
    if lowered.startswith("mysql://"):
        return DIALECT_MYSQL, _url_from_uri(text, drivers[DIALECT_MYSQL], default_port=3306)
    if "server=" in lowered or "data source=" in lowered or "initial catalog=" in lowered:
        return DIALECT_SQLSERVER, _url_from_ado(text, drivers[DIALECT_SQLSERVER])
    if "://" in text:
        url = make_url(text)
        return dialect_name_for(url), url
    raise ConnectionStringError(f"Unrecognised connection string: {mask_connection_string(text)}")


def mask_connection_string(connection_string: str) -> str:
    """Replace passwords in URL and ADO.NET style strings with ``****``."""
    masked = _URL_PASSWORD.sub(r"\1****\3", connection_string)
    return _ADO_PASSWORD.sub(lambda match: f"{match.group(1)}=****", masked)


def _url_from_uri(text: str, drivername: str, *, default_port: int) -> URL:
    parts = urlsplit(text)
    database = unquote(parts.path.lstrip("/").split(";", 1)[0]) or None
    return URL.create(
        drivername,
        username=unquote(parts.username) if parts.username else None,
        password=unquote(parts.password) if parts.password else None,
        host=parts.hostname,
        port=parts.port or default_port,
        database=database,
        query=dict(parse_qsl(parts.query)),
    )


def _url_from_jdbc(text: str, drivername: str) -> URL:
    # jdbc:sqlserver://host:port;databaseName=db;user=u;password=p
    head, _, tail = text.partition(";")
    base = urlsplit(head)
    options = _split_pairs(tail)
    return URL.create(
        drivername,
        username=options.get("user") or options.get("username"),
        password=options.get("password"),
        host=base.hostname,
        port=base.port or 1433,
        database=options.get("databasename") or options.get("database"),
    )


def _url_from_ado(text: str, drivername: str) -> URL:
    options = _split_pairs(text)
    server = options.get("server") or options.get("data source") or "localhost"
    separator = "," if "," in server else ":"
    host, _, port = server.partition(separator)
    query = {}
    for key in ("encrypt", "trustservercertificate"):
        if key in options:
            query["Encrypt" if key == "encrypt" else "TrustServerCertificate"] = options[key]
    return URL.create(
        drivername,
        username=options.get("user id") or options.get("uid") or options.get("user"),
        password=options.get("password") or options.get("pwd"),
        host=host.strip() or "localhost",
        port=int(port) if port.strip().isdigit() else None,
        database=options.get("database") or options.get("initial catalog"),
        query=query,
    )


def _split_pairs(text: str) -> dict[str, str]:
    pairs: dict[str, str] = {}
    for part in text.split(";"):
        key, sep, value = part.partition("=")
        if sep:
            pairs[key.strip().lower()] = value.strip()
    return pairs
