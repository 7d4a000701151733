"""Lookup tables preloaded once per batch for ``lookup`` transforms."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Iterable

from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from sync_app.engine.mapping.config import LookupTransform, MappingConfig
from sync_app.engine.writer.dialects import SQLDialect

logger = logging.getLogger(__name__)

DEFAULT_MAX_LOOKUP_ROWS = 10_000

_MISSING = object()


def lookup_key(table: str, match_column: str, return_column: str) -> tuple[str, str, str]:
    return table, match_column, return_column


@dataclass
class LookupCache:
    tables: dict[tuple[str, str, str], dict[str, Any]] = field(default_factory=dict)
    total_rows: int = 0
    load_seconds: float = 0.0
    warnings: list[str] = field(default_factory=list)

    def stats(self) -> dict[str, Any]:
        return {
            "tables_loaded": len(self.tables),
            "total_rows": self.total_rows,
            "load_seconds": round(self.load_seconds, 3),
            "warnings": list(self.warnings),
        }


class LookupResolver:
    """Reads ``match -> return`` pairs from the target database, case-insensitively by default."""

    def __init__(
        self,
        engine: Engine,
        dialect: SQLDialect,
        *,
        max_rows: int = DEFAULT_MAX_LOOKUP_ROWS,
        case_sensitive: bool = False,
        log: logging.Logger | None = None,
    ):
        self.engine = engine
        self.dialect = dialect
        self.max_rows = max_rows
        self.case_sensitive = case_sensitive
        self.logger = log or logger

    @staticmethod
    def requirements(config: MappingConfig) -> list[LookupTransform]:
        seen: set[tuple[str, str, str]] = set()
        required: list[LookupTransform] = []
        for mapping in config.enabled_mappings:
            transform = mapping.transform
            if not isinstance(transform, LookupTransform):
                continue
            key = lookup_key(transform.table, transform.match_column, transform.return_column)
            if key not in seen:
                seen.add(key)
                required.append(transform)
        return required

    def preload(self, requirements: Iterable[LookupTransform]) -> LookupCache:
        """Load every required table; failures become cache warnings, not exceptions."""
        started = time.monotonic()
        cache = LookupCache()
        for requirement in requirements:
            try:
                with self.engine.connect() as conn:
                    row_count = conn.execute(self.dialect.count_rows(requirement.table)).scalar() or 0
                    if row_count > self.max_rows:
                        cache.warnings.append(
                            f"Lookup table {requirement.table} has {row_count} rows (limit: {self.max_rows})."
                        )
                    rows = conn.execute(
                        self.dialect.select_pairs(
                            requirement.table, requirement.match_column, requirement.return_column
                        )
                    ).all()
            except SQLAlchemyError as exc:
                message = f"Failed to load lookup table {requirement.table}: {exc}"
                cache.warnings.append(message)
                self.logger.warning(message, extra={"sync_table": requirement.table})
                continue
            data: dict[str, Any] = {}
            for match_value, return_value in rows:
                if match_value is None:
                    continue
                data[self._normalize(match_value)] = return_value
            cache.tables[lookup_key(requirement.table, requirement.match_column, requirement.return_column)] = data
            cache.total_rows += len(rows)
        cache.load_seconds = time.monotonic() - started
        return cache

    def resolve(self, cache: LookupCache, transform: LookupTransform, value: Any) -> tuple[bool, Any]:
        """Return ``(found, value)``; misses fall back to the transform's default."""
        table = cache.tables.get(lookup_key(transform.table, transform.match_column, transform.return_column))
        if table is None or value is None:
            return False, transform.default_value
        result = table.get(self._normalize(value), _MISSING)
        if result is _MISSING:
            return False, transform.default_value
        return True, result

    def _normalize(self, value: Any) -> str:
        text = str(value)
        return text if self.case_sensitive else text.lower()
