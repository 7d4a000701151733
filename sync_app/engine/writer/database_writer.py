"""
Dialect-abstracted writer for target tables.

Rows are written in fixed-size chunks, one transaction per chunk. A failing
chunk is attributed to every row it contained and the remaining chunks still
run; callers inspect ``errors`` to learn the true outcome.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping, Sequence

from sqlalchemy import text
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import SQLAlchemyError

from sync_app.engine import metrics

from .dialects import (
    COUNT_ALL_INSERTED,
    COUNT_INSERTED_FLAGS,
    COUNT_MERGE_ACTIONS,
    COUNT_RETURNED_ROWS,
    COUNT_ROWCOUNT,
    COUNT_UNRESOLVED,
    ON_CONFLICT_MODES,
    ON_CONFLICT_UPDATE,
    SQLDialect,
    get_dialect,
)
from .introspection import dialect_name_for

logger = logging.getLogger(__name__)

DEFAULT_CHUNK_SIZE = 100
KEY_BATCH_SIZE = 500


class DatabaseWriterError(RuntimeError):
    """Raised for caller errors (bad arguments); database failures are reported per chunk."""


@dataclass(frozen=True)
class RowError:
    row: int
    error: str

    def to_dict(self) -> dict[str, Any]:
        return {"row": self.row, "error": self.error}


@dataclass
class UpsertResult:
    """
    Outcome of an upsert.

    ``unverified`` counts rows written by a statement that cannot distinguish
    inserts from updates; ``counts_exact`` is False whenever it is non-zero.
    """

    inserted: int = 0
    updated: int = 0
    skipped: int = 0
    unverified: int = 0
    errors: list[RowError] = field(default_factory=list)

    @property
    def counts_exact(self) -> bool:
        return self.unverified == 0

    @property
    def written(self) -> int:
        return self.inserted + self.updated + self.unverified

    def to_dict(self) -> dict[str, Any]:
        return {
            "inserted": self.inserted,
            "updated": self.updated,
            "skipped": self.skipped,
            "unverified": self.unverified,
            "counts_exact": self.counts_exact,
            "errors": [error.to_dict() for error in self.errors],
        }


@dataclass
class InsertResult:
    inserted: int = 0
    errors: list[RowError] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {"inserted": self.inserted, "errors": [error.to_dict() for error in self.errors]}


class DatabaseWriter:
    """
    Executes upsert, batch insert, stale cleanup and single-row writes.

    ``exact_counts`` controls dialects whose upsert statement cannot report
    inserts versus updates: when True the writer checks which keys already
    exist inside the same transaction before writing; when False those rows
    are reported as ``unverified``.
    """

    def __init__(
        self,
        engine: Engine,
        *,
        dialect: SQLDialect | str | None = None,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        exact_counts: bool = True,
        log: logging.Logger | None = None,
    ):
        self.engine = engine
        if dialect is None:
            dialect = dialect_name_for(engine)
        self.dialect = get_dialect(dialect) if isinstance(dialect, str) else dialect
        self.chunk_size = max(int(chunk_size), 1)
        self.exact_counts = exact_counts
        self.logger = log or logger

    # ---------------------------------------------------------------- upsert

    def upsert(
        self,
        table: str,
        key_column: str,
        rows: Sequence[Mapping[str, Any]],
        *,
        chunk_size: int | None = None,
        on_conflict: str = ON_CONFLICT_UPDATE,
    ) -> UpsertResult:
        if on_conflict not in ON_CONFLICT_MODES:
            raise DatabaseWriterError(f"Unknown conflict policy '{on_conflict}'")
        result = UpsertResult()
        if not rows:
            return result
        columns = self._columns(rows)
        if key_column not in columns:
            raise DatabaseWriterError(f"Key column '{key_column}' is missing from the row data.")

        size = self.dialect.rows_per_chunk(chunk_size or self.chunk_size, len(columns))
        for start, chunk in _chunks(rows, size):
            try:
                with self.engine.begin() as conn:
                    counts = self._upsert_chunk(conn, table, key_column, columns, chunk, on_conflict)
            except SQLAlchemyError as exc:
                self._record_chunk_failure("upsert", table, start, len(chunk), exc, result.errors)
                continue
            result.inserted += counts.inserted
            result.updated += counts.updated
            result.skipped += counts.skipped
            result.unverified += counts.unverified
        metrics.record_writer_rows(self.dialect.name, "inserted", result.inserted)
        metrics.record_writer_rows(self.dialect.name, "updated", result.updated)
        metrics.record_writer_rows(self.dialect.name, "unverified", result.unverified)
        metrics.record_writer_rows(self.dialect.name, "skipped", result.skipped)
        metrics.record_writer_rows(self.dialect.name, "failed", len(result.errors))
        return result

    def _upsert_chunk(
        self,
        conn: Connection,
        table: str,
        key_column: str,
        columns: Sequence[str],
        chunk: Sequence[Mapping[str, Any]],
        on_conflict: str,
    ) -> UpsertResult:
        result = UpsertResult()
        statement = self.dialect.build_upsert(table, columns, key_column, len(chunk), on_conflict)
        existing: set[str] | None = None
        if statement.counting == COUNT_UNRESOLVED and self.exact_counts:
            existing = self._existing_keys(conn, table, key_column, [row.get(key_column) for row in chunk])

        cursor = conn.execute(text(statement.sql), self.dialect.bind_rows(chunk, columns))
        total = len(chunk)

        if statement.counting == COUNT_MERGE_ACTIONS:
            actions = [str(row[0]).upper() for row in cursor.fetchall()]
            inserted = actions.count("INSERT")
            updated = actions.count("UPDATE")
            result.inserted += inserted
            result.updated += updated
            result.skipped += total - inserted - updated
        elif statement.counting == COUNT_INSERTED_FLAGS:
            flags = [bool(row[0]) for row in cursor.fetchall()]
            inserted = sum(1 for flag in flags if flag)
            result.inserted += inserted
            result.updated += len(flags) - inserted
            result.skipped += total - len(flags)
        elif statement.counting == COUNT_RETURNED_ROWS:
            inserted = len(cursor.fetchall())
            result.inserted += inserted
            result.skipped += total - inserted
        elif statement.counting == COUNT_ROWCOUNT:
            inserted = max(cursor.rowcount or 0, 0)
            result.inserted += inserted
            result.skipped += total - inserted
        elif statement.counting == COUNT_ALL_INSERTED:
            result.inserted += total
        elif existing is not None:
            seen = set(existing)
            for row in chunk:
                key = _key_text(row.get(key_column))
                if key in seen:
                    result.updated += 1
                else:
                    result.inserted += 1
                    seen.add(key)
        else:
            result.unverified += total
        return result

    def _existing_keys(self, conn: Connection, table: str, key_column: str, keys: Iterable[Any]) -> set[str]:
        values = list(dict.fromkeys(self.dialect.bind_value(key) for key in keys if key is not None))
        found: set[str] = set()
        for start in range(0, len(values), KEY_BATCH_SIZE):
            batch = values[start : start + KEY_BATCH_SIZE]
            rows = conn.execute(self.dialect.select_existing_keys(table, key_column), {"keys": batch})
            found.update(_key_text(row[0]) for row in rows)
        return found

    # ---------------------------------------------------------- batch insert

    def batch_insert(
        self,
        table: str,
        rows: Sequence[Mapping[str, Any]],
        *,
        chunk_size: int | None = None,
    ) -> InsertResult:
        result = InsertResult()
        if not rows:
            return result
        columns = self._columns(rows)
        size = self.dialect.rows_per_chunk(chunk_size or self.chunk_size, len(columns))
        for start, chunk in _chunks(rows, size):
            try:
                with self.engine.begin() as conn:
                    conn.execute(
                        text(self.dialect.build_insert(table, columns, len(chunk))),
                        self.dialect.bind_rows(chunk, columns),
                    )
                result.inserted += len(chunk)
            except SQLAlchemyError as exc:
                self._record_chunk_failure("insert", table, start, len(chunk), exc, result.errors)
        metrics.record_writer_rows(self.dialect.name, "inserted", result.inserted)
        metrics.record_writer_rows(self.dialect.name, "failed", len(result.errors))
        return result

    # --------------------------------------------------------- stale cleanup

    def delete_stale(self, table: str, key_column: str, valid_keys: Iterable[Any]) -> int:
        """
        Delete rows whose key is not in ``valid_keys``.

        An empty ``valid_keys`` is a no-op: a sync that produced zero records
        must never empty the target table.
        """
        valid = {_key_text(key) for key in valid_keys if key is not None}
        if not valid:
            self.logger.warning(
                "Skipping stale delete with an empty key set",
                extra={"sync_table": table, "sync_key_column": key_column},
            )
            return 0

        deleted = 0
        with self.engine.begin() as conn:
            existing = [row[0] for row in conn.execute(self.dialect.select_keys(table, key_column))]
            stale = [key for key in existing if key is not None and _key_text(key) not in valid]
            for start in range(0, len(stale), KEY_BATCH_SIZE):
                batch = stale[start : start + KEY_BATCH_SIZE]
                outcome = conn.execute(self.dialect.delete_keys(table, key_column), {"keys": batch})
                deleted += max(outcome.rowcount or 0, 0)
        if deleted:
            self.logger.info(
                "Deleted stale rows",
                extra={"sync_table": table, "sync_deleted": deleted},
            )
        metrics.record_writer_rows(self.dialect.name, "deleted", deleted)
        return deleted

    # ---------------------------------------------------- single-row writes

    def delete_by_key(self, table: str, key_column: str, key: Any) -> int:
        with self.engine.begin() as conn:
            outcome = conn.execute(
                self.dialect.delete_by_key(table, key_column),
                {"key": self.dialect.bind_value(key)},
            )
        return max(outcome.rowcount or 0, 0)

    def update_by_key(self, table: str, key_column: str, key: Any, values: Mapping[str, Any]) -> int:
        if not values:
            return 0
        columns = list(values)
        params = {f"v{index}": self.dialect.bind_value(values[column]) for index, column in enumerate(columns)}
        params["key"] = self.dialect.bind_value(key)
        with self.engine.begin() as conn:
            outcome = conn.execute(self.dialect.update_by_key(table, key_column, columns), params)
        return max(outcome.rowcount or 0, 0)

    # ---------------------------------------------------------------- helpers

    @staticmethod
    def _columns(rows: Sequence[Mapping[str, Any]]) -> list[str]:
        # The first row defines the column list; later rows bind missing keys as NULL.
        return list(rows[0].keys())

    def _record_chunk_failure(
        self,
        operation: str,
        table: str,
        start: int,
        size: int,
        exc: Exception,
        errors: list[RowError],
    ) -> None:
        message = str(getattr(exc, "orig", None) or exc)
        errors.extend(RowError(row=start + offset, error=message) for offset in range(size))
        metrics.record_writer_chunk_failure(self.dialect.name, operation)
        self.logger.warning(
            "Writer chunk failed",
            extra={
                "sync_operation": operation,
                "sync_table": table,
                "sync_chunk_start": start,
                "sync_chunk_size": size,
                "sync_error": message,
            },
        )


def _chunks(rows: Sequence[Mapping[str, Any]], size: int):
    for start in range(0, len(rows), size):
        yield start, rows[start : start + size]


def _key_text(value: Any) -> str:
    if isinstance(value, bool):
        return str(int(value))
    return str(value)
