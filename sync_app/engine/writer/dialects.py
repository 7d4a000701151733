"""
SQL construction per target dialect.

Every statement built here carries values as bound parameters; only
identifiers are rendered into the SQL text, and only after quoting. Each
dialect also declares how the writer recovers inserted/updated counts from
an upsert statement.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Mapping, Sequence

from sqlalchemy import bindparam, text
from sqlalchemy.sql.elements import TextClause

from .introspection import DIALECT_MYSQL, DIALECT_POSTGRESQL, DIALECT_SQLITE, DIALECT_SQLSERVER

ON_CONFLICT_UPDATE = "update"
ON_CONFLICT_SKIP = "skip"
ON_CONFLICT_ERROR = "error"
ON_CONFLICT_MODES = (ON_CONFLICT_UPDATE, ON_CONFLICT_SKIP, ON_CONFLICT_ERROR)

# How the writer turns an executed upsert into inserted/updated/skipped counts.
COUNT_MERGE_ACTIONS = "merge_actions"  # one row per affected key: 'INSERT' / 'UPDATE'
COUNT_INSERTED_FLAGS = "inserted_flags"  # one boolean row per affected key
COUNT_RETURNED_ROWS = "returned_rows"  # one row per inserted key, the rest skipped
COUNT_ROWCOUNT = "rowcount"  # cursor rowcount equals inserted rows, the rest skipped
COUNT_ALL_INSERTED = "all_inserted"  # plain insert; success means every row inserted
COUNT_UNRESOLVED = "unresolved"  # statement cannot tell inserts from updates


class UnsupportedDialectError(ValueError):
    """Raised for a dialect name the writer has no SQL builder for."""


@dataclass(frozen=True)
class UpsertStatement:
    sql: str
    counting: str


def param_name(row_index: int, column_index: int) -> str:
    return f"p{row_index}_{column_index}"


class SQLDialect:
    """Base SQL builder; subclasses override quoting and upsert syntax."""

    name = "generic"
    open_quote = '"'
    close_quote = '"'
    max_parameters = 999
    boolean_as_int = True

    # ---------------------------------------------------------------- quoting

    def quote_identifier(self, identifier: str) -> str:
        """Quote one identifier, doubling embedded closing quotes."""
        if not identifier or "\x00" in identifier:
            raise ValueError(f"Invalid SQL identifier {identifier!r}")
        escaped = identifier.replace(self.close_quote, self.close_quote * 2)
        # text() treats ':name' as a bind parameter; escape literal colons.
        escaped = escaped.replace(":", "\\:")
        return f"{self.open_quote}{escaped}{self.close_quote}"

    def quote_table(self, table: str) -> str:
        """Quote ``schema.table`` (or a bare table) part by part."""
        parts = [part.strip(" []`\"") for part in table.split(".")]
        return ".".join(self.quote_identifier(part) for part in parts)

    # ----------------------------------------------------------------- values

    def bind_value(self, value: Any) -> Any:
        """Convert a Python value into the form bound for this dialect."""
        if isinstance(value, bool):
            return int(value) if self.boolean_as_int else value
        if isinstance(value, (dict, list, tuple)):
            return json.dumps(value, default=str)
        if isinstance(value, (datetime, date, Decimal, int, float, str, bytes)) or value is None:
            return value
        return str(value)

    def bind_rows(self, rows: Sequence[Mapping[str, Any]], columns: Sequence[str]) -> dict[str, Any]:
        params: dict[str, Any] = {}
        for row_index, row in enumerate(rows):
            for column_index, column in enumerate(columns):
                params[param_name(row_index, column_index)] = self.bind_value(row.get(column))
        return params

    def rows_per_chunk(self, requested: int, column_count: int) -> int:
        """Cap a chunk so its bound parameters stay under the driver limit."""
        capacity = max(self.max_parameters // max(column_count, 1), 1)
        return max(1, min(requested, capacity))

    # ------------------------------------------------------------- statements

    def _values_rows(self, row_count: int, column_count: int) -> str:
        return ", ".join(
            "(" + ", ".join(f":{param_name(row, col)}" for col in range(column_count)) + ")"
            for row in range(row_count)
        )

    def _column_list(self, columns: Sequence[str]) -> str:
        return ", ".join(self.quote_identifier(column) for column in columns)

    def build_insert(self, table: str, columns: Sequence[str], row_count: int) -> str:
        return (
            f"INSERT INTO {self.quote_table(table)} ({self._column_list(columns)}) "
            f"VALUES {self._values_rows(row_count, len(columns))}"
        )

    def build_upsert(
        self,
        table: str,
        columns: Sequence[str],
        key_column: str,
        row_count: int,
        on_conflict: str,
    ) -> UpsertStatement:
        if on_conflict == ON_CONFLICT_ERROR:
            return UpsertStatement(self.build_insert(table, columns, row_count), COUNT_ALL_INSERTED)
        return self._build_upsert(table, columns, key_column, row_count, on_conflict)

    def _build_upsert(
        self,
        table: str,
        columns: Sequence[str],
        key_column: str,
        row_count: int,
        on_conflict: str,
    ) -> UpsertStatement:
        raise NotImplementedError

    def select_keys(self, table: str, key_column: str) -> TextClause:
        return text(f"SELECT {self.quote_identifier(key_column)} FROM {self.quote_table(table)}")

    def select_existing_keys(self, table: str, key_column: str) -> TextClause:
        key = self.quote_identifier(key_column)
        return text(f"SELECT {key} FROM {self.quote_table(table)} WHERE {key} IN :keys").bindparams(
            bindparam("keys", expanding=True)
        )

    def delete_keys(self, table: str, key_column: str) -> TextClause:
        key = self.quote_identifier(key_column)
        return text(f"DELETE FROM {self.quote_table(table)} WHERE {key} IN :keys").bindparams(
            bindparam("keys", expanding=True)
        )

    def delete_by_key(self, table: str, key_column: str) -> TextClause:
        return text(f"DELETE FROM {self.quote_table(table)} WHERE {self.quote_identifier(key_column)} = :key")

    def update_by_key(self, table: str, key_column: str, columns: Sequence[str]) -> TextClause:
        assignments = ", ".join(
            f"{self.quote_identifier(column)} = :v{index}" for index, column in enumerate(columns)
        )
        return text(
            f"UPDATE {self.quote_table(table)} SET {assignments} "
            f"WHERE {self.quote_identifier(key_column)} = :key"
        )

    def select_pairs(self, table: str, match_column: str, return_column: str) -> TextClause:
        return text(
            f"SELECT {self.quote_identifier(match_column)}, {self.quote_identifier(return_column)} "
            f"FROM {self.quote_table(table)}"
        )

    def count_rows(self, table: str) -> TextClause:
        return text(f"SELECT COUNT(*) FROM {self.quote_table(table)}")


class SQLServerDialect(SQLDialect):
    """MERGE-based upsert; ``OUTPUT $action`` reports INSERT/UPDATE per row."""

    name = DIALECT_SQLSERVER
    open_quote = "["
    close_quote = "]"
    # The driver limit is 2100 bound parameters per request.
    max_parameters = 2099

    def _build_upsert(self, table, columns, key_column, row_count, on_conflict):
        key = self.quote_identifier(key_column)
        column_list = self._column_list(columns)
        update_columns = [column for column in columns if column != key_column]
        clauses = [
            f"MERGE INTO {self.quote_table(table)} WITH (HOLDLOCK) AS target",
            f"USING (VALUES {self._values_rows(row_count, len(columns))}) AS source ({column_list})",
            f"ON target.{key} = source.{key}",
        ]
        if on_conflict == ON_CONFLICT_UPDATE and update_columns:
            assignments = ", ".join(
                f"target.{self.quote_identifier(column)} = source.{self.quote_identifier(column)}"
                for column in update_columns
            )
            clauses.append(f"WHEN MATCHED THEN UPDATE SET {assignments}")
        source_values = ", ".join(f"source.{self.quote_identifier(column)}" for column in columns)
        clauses.append(f"WHEN NOT MATCHED THEN INSERT ({column_list}) VALUES ({source_values})")
        clauses.append("OUTPUT $action;")
        return UpsertStatement("\n".join(clauses), COUNT_MERGE_ACTIONS)


class PostgreSQLDialect(SQLDialect):
    """``ON CONFLICT`` upsert; ``xmax = 0`` on the returned row marks an insert."""

    name = DIALECT_POSTGRESQL
    max_parameters = 32767
    boolean_as_int = False

    def _build_upsert(self, table, columns, key_column, row_count, on_conflict):
        insert = self.build_insert(table, columns, row_count)
        key = self.quote_identifier(key_column)
        update_columns = [column for column in columns if column != key_column]
        if on_conflict == ON_CONFLICT_UPDATE and update_columns:
            assignments = ", ".join(
                f"{self.quote_identifier(column)} = EXCLUDED.{self.quote_identifier(column)}"
                for column in update_columns
            )
            return UpsertStatement(
                f"{insert} ON CONFLICT ({key}) DO UPDATE SET {assignments} RETURNING (xmax = 0) AS inserted",
                COUNT_INSERTED_FLAGS,
            )
        return UpsertStatement(f"{insert} ON CONFLICT ({key}) DO NOTHING RETURNING 1", COUNT_RETURNED_ROWS)


class MySQLDialect(SQLDialect):
    """``ON DUPLICATE KEY UPDATE`` / ``INSERT IGNORE``; updates are not distinguishable."""

    name = DIALECT_MYSQL
    open_quote = "`"
    close_quote = "`"
    max_parameters = 65535

    def _build_upsert(self, table, columns, key_column, row_count, on_conflict):
        update_columns = [column for column in columns if column != key_column]
        if on_conflict == ON_CONFLICT_UPDATE and update_columns:
            assignments = ", ".join(
                f"{self.quote_identifier(column)} = VALUES({self.quote_identifier(column)})"
                for column in update_columns
            )
            insert = self.build_insert(table, columns, row_count)
            return UpsertStatement(f"{insert} ON DUPLICATE KEY UPDATE {assignments}", COUNT_UNRESOLVED)
        insert = self.build_insert(table, columns, row_count)
        return UpsertStatement(insert.replace("INSERT INTO", "INSERT IGNORE INTO", 1), COUNT_ROWCOUNT)


class SQLiteDialect(SQLDialect):
    """SQLite ``ON CONFLICT`` upsert, used for local runs and tests."""

    name = DIALECT_SQLITE
    max_parameters = 999

    def _build_upsert(self, table, columns, key_column, row_count, on_conflict):
        insert = self.build_insert(table, columns, row_count)
        key = self.quote_identifier(key_column)
        update_columns = [column for column in columns if column != key_column]
        if on_conflict == ON_CONFLICT_UPDATE and update_columns:
            assignments = ", ".join(
                f"{self.quote_identifier(column)} = excluded.{self.quote_identifier(column)}"
                for column in update_columns
            )
            return UpsertStatement(f"{insert} ON CONFLICT ({key}) DO UPDATE SET {assignments}", COUNT_UNRESOLVED)
        return UpsertStatement(f"{insert} ON CONFLICT ({key}) DO NOTHING", COUNT_ROWCOUNT)


_DIALECTS: Mapping[str, type[SQLDialect]] = {
    DIALECT_SQLSERVER: SQLServerDialect,
    DIALECT_POSTGRESQL: PostgreSQLDialect,
    DIALECT_MYSQL: MySQLDialect,
    DIALECT_SQLITE: SQLiteDialect,
}


def get_dialect(name: str) -> SQLDialect:
    try:
        return _DIALECTS[name]()
    except KeyError as exc:
        raise UnsupportedDialectError(f"No SQL builder for dialect '{name}'") from exc
