"""
Full and incremental synchronization of one mapping config.

A run fetches records from a :class:`RecordSource`, drops records that fail
the mapping's filters, transforms the rest and upserts the target rows with
the :class:`DatabaseWriter`. Only one run per mapping may be active in a
process at a time; webhook application consults the same registry.
"""

from __future__ import annotations

import logging
import threading
import time
from contextlib import contextmanager
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Iterator, Mapping, Sequence

import requests
from sqlalchemy.exc import SQLAlchemyError

from sync_app.engine import metrics
from sync_app.engine.mapping.config import MappingConfig
from sync_app.engine.mapping.service import MappingService
from sync_app.engine.transforms.engine import STATUS_ERROR, TransformEngine
from sync_app.engine.writer.database_writer import DatabaseWriter, DatabaseWriterError

from .filters import apply_filters
from .source import RecordSource, RemoteSourceError

logger = logging.getLogger(__name__)

SYNC_FULL = "full"
SYNC_INCREMENTAL = "incremental"
SYNC_WEBHOOK = "webhook"

DEFAULT_LOOKBACK_MINUTES = 15
MAX_REPORTED_ERRORS = 50
FETCH_PROGRESS_INTERVAL = 100

PHASE_STARTING = "starting"
PHASE_FETCHING = "fetching"
PHASE_TRANSFORMING = "transforming"
PHASE_WRITING = "writing"
PHASE_CLEANUP = "cleanup"
PHASE_COMPLETED = "completed"
PHASE_FAILED = "failed"

ProgressCallback = Callable[["SyncProgress"], None]
Checkpoint = Callable[[], None]


class SyncAlreadyRunningError(RuntimeError):
    """Raised when a sync for the mapping is already in progress."""


@dataclass
class SyncStats:
    fetched: int = 0
    filtered: int = 0
    inserted: int = 0
    updated: int = 0
    unverified: int = 0
    skipped: int = 0
    failed: int = 0
    deleted: int = 0

    def to_dict(self) -> dict[str, int]:
        return asdict(self)


@dataclass(frozen=True)
class SyncProgress:
    phase: str
    records_fetched: int = 0
    records_transformed: int = 0
    records_written: int = 0
    records_skipped: int = 0
    errors: int = 0
    elapsed_seconds: float = 0.0
    message: str | None = None


@dataclass
class SyncResult:
    success: bool
    mapping_id: str
    mapping_name: str | None
    sync_type: str
    dry_run: bool
    stats: SyncStats
    errors: list[str]
    started_at: datetime
    completed_at: datetime
    duration: dict[str, float] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "mapping_id": self.mapping_id,
            "mapping_name": self.mapping_name,
            "type": self.sync_type,
            "dry_run": self.dry_run,
            "stats": self.stats.to_dict(),
            "errors": list(self.errors),
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat(),
            "duration": dict(self.duration),
        }


@dataclass(frozen=True)
class RunningSync:
    mapping_id: str
    sync_type: str
    started_at: datetime


class RunningSyncRegistry:
    """Which mappings currently have a bulk sync running; one instance per app, shared by syncs and webhooks."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._running: dict[str, RunningSync] = {}

    @contextmanager
    def claim(self, mapping_id: str, sync_type: str) -> Iterator[RunningSync]:
        with self._lock:
            if mapping_id in self._running:
                raise SyncAlreadyRunningError(f"Sync already running for mapping {mapping_id}")
            entry = RunningSync(mapping_id, sync_type, datetime.now(timezone.utc))
            self._running[mapping_id] = entry
        try:
            yield entry
        finally:
            with self._lock:
                self._running.pop(mapping_id, None)

    def is_running(self, mapping_id: str) -> bool:
        with self._lock:
            return mapping_id in self._running

    def snapshot(self) -> list[RunningSync]:
        with self._lock:
            return list(self._running.values())


def required_fields(config: MappingConfig) -> list[str]:
    """Source paths a fetch must select for ``config``."""
    fields: list[str] = []
    for mapping in config.enabled_mappings:
        fields.extend(ref.field for ref in mapping.source.refs)
    if config.key_mapping is not None:
        fields.append(config.key_mapping.source_field)
    fields.extend(entry.field for entry in config.filters)
    return [name for name in dict.fromkeys(fields) if name != "id"]


def _group_by_columns(
    rows: Sequence[tuple[int, Mapping[str, Any]]],
) -> list[tuple[list[int], list[Mapping[str, Any]]]]:
    # Rows from partially transformed records carry fewer columns; writing
    # them with the full column list would overwrite those columns with NULL.
    # Each group keeps the run-level index of its rows for error reporting.
    groups: dict[tuple[str, ...], tuple[list[int], list[Mapping[str, Any]]]] = {}
    for index, row in rows:
        positions, members = groups.setdefault(tuple(row.keys()), ([], []))
        positions.append(index)
        members.append(row)
    return list(groups.values())


class SyncEngine:
    """Run syncs for stored mapping configs."""

    def __init__(
        self,
        mappings: MappingService,
        source: RecordSource,
        writer: DatabaseWriter,
        transformer: TransformEngine,
        *,
        registry: RunningSyncRegistry,
        log: logging.Logger | None = None,
    ):
        self.mappings = mappings
        self.source = source
        self.writer = writer
        self.transformer = transformer
        self.registry = registry
        self.logger = log or logger

    def full_sync(
        self,
        mapping_id: str,
        *,
        dry_run: bool = False,
        delete_stale: bool = False,
        on_progress: ProgressCallback | None = None,
        checkpoint: Checkpoint | None = None,
    ) -> SyncResult:
        config = self.mappings.require(mapping_id)
        return self._run(
            config,
            SYNC_FULL,
            dry_run=dry_run,
            delete_stale=delete_stale,
            updated_after=None,
            on_progress=on_progress,
            checkpoint=checkpoint,
        )

    def incremental_sync(
        self,
        mapping_id: str,
        *,
        since: datetime | None = None,
        lookback_minutes: int = DEFAULT_LOOKBACK_MINUTES,
        dry_run: bool = False,
        on_progress: ProgressCallback | None = None,
        checkpoint: Checkpoint | None = None,
    ) -> SyncResult:
        config = self.mappings.require(mapping_id)
        if since is None:
            since = datetime.now(timezone.utc) - timedelta(minutes=lookback_minutes)
        return self._run(
            config,
            SYNC_INCREMENTAL,
            dry_run=dry_run,
            delete_stale=False,
            updated_after=since,
            on_progress=on_progress,
            checkpoint=checkpoint,
        )

    def is_running(self, mapping_id: str) -> bool:
        return self.registry.is_running(mapping_id)

    # ------------------------------------------------------------------ run

    def _run(
        self,
        config: MappingConfig,
        sync_type: str,
        *,
        dry_run: bool,
        delete_stale: bool,
        updated_after: datetime | None,
        on_progress: ProgressCallback | None,
        checkpoint: Checkpoint | None,
    ) -> SyncResult:
        started_at = datetime.now(timezone.utc)
        started = time.monotonic()
        stats = SyncStats()
        errors: list[str] = []
        timing = {"fetch_seconds": 0.0, "transform_seconds": 0.0, "write_seconds": 0.0}
        check = checkpoint or (lambda: None)

        def emit(phase: str, message: str | None = None, **counts: int) -> None:
            if on_progress is None:
                return
            on_progress(
                SyncProgress(
                    phase=phase,
                    records_fetched=stats.fetched,
                    records_skipped=stats.filtered + stats.skipped,
                    errors=stats.failed,
                    elapsed_seconds=time.monotonic() - started,
                    message=message,
                    **counts,
                )
            )

        log_extra = {"sync_mapping_id": config.id, "sync_type": sync_type, "sync_dry_run": dry_run}
        with self.registry.claim(config.id, sync_type):
            self.logger.info("Sync started", extra=log_extra)
            emit(PHASE_STARTING, f"Starting {sync_type} sync for {config.name}")
            success = True
            try:
                records = self._fetch(config, updated_after, stats, emit, check, timing)
                check()

                kept, dropped = apply_filters(records, config.filters)
                stats.filtered = dropped

                emit(PHASE_TRANSFORMING, f"Transforming {len(kept)} records")
                phase_started = time.monotonic()
                batch = self.transformer.transform_batch(config, kept)
                rows: list[dict[str, Any]] = []
                transform_failures = 0
                for result in batch.results:
                    if result.status == STATUS_ERROR:
                        transform_failures += 1
                        errors.extend(f"{result.source_id}: {error.message}" for error in result.errors)
                    else:
                        rows.append(result.target_row)
                stats.failed += transform_failures
                timing["transform_seconds"] = time.monotonic() - phase_started
                metrics.record_sync_records("transformed", len(rows))
                check()

                if dry_run:
                    pass
                elif config.key_mapping is None:
                    stats.skipped += len(rows)
                    errors.append(f"Mapping {config.id} has no key mapping; {len(rows)} rows were not written.")
                elif rows:
                    emit(PHASE_WRITING, f"Writing {len(rows)} rows", records_transformed=len(rows))
                    phase_started = time.monotonic()
                    valid_keys, write_failures = self._write(config, rows, stats, errors, check)
                    timing["write_seconds"] = time.monotonic() - phase_started

                    if delete_stale:
                        if transform_failures or write_failures:
                            errors.append("Stale cleanup skipped because some records failed.")
                        else:
                            emit(PHASE_CLEANUP, "Removing stale rows", records_transformed=len(rows))
                            check()
                            stats.deleted = self.writer.delete_stale(
                                config.target_table, config.key_mapping.target_column, valid_keys
                            )
            except (
                SQLAlchemyError,
                DatabaseWriterError,
                RemoteSourceError,
                requests.RequestException,
            ) as exc:
                success = False
                errors.append(str(exc))
                self.logger.exception("Sync failed", extra=log_extra)
                emit(PHASE_FAILED, str(exc))

        completed_at = datetime.now(timezone.utc)
        timing["total_seconds"] = time.monotonic() - started
        if success:
            emit(
                PHASE_COMPLETED,
                "Sync completed",
                records_written=stats.inserted + stats.updated + stats.unverified,
            )
        self.logger.info("Sync finished", extra={**log_extra, "sync_success": success, "sync_stats": stats.to_dict()})
        return SyncResult(
            success=success,
            mapping_id=config.id,
            mapping_name=config.name,
            sync_type=sync_type,
            dry_run=dry_run,
            stats=stats,
            errors=errors[:MAX_REPORTED_ERRORS],
            started_at=started_at,
            completed_at=completed_at,
            duration={key: round(value, 3) for key, value in timing.items()},
        )

    def _fetch(self, config, updated_after, stats, emit, check, timing) -> list[dict[str, Any]]:
        emit(PHASE_FETCHING, "Fetching records")
        phase_started = time.monotonic()
        records: list[dict[str, Any]] = []
        next_report = FETCH_PROGRESS_INTERVAL
        for batch in self.source.fetch(config.source_resource, required_fields(config), updated_after=updated_after):
            check()
            records.extend(batch.records)
            stats.fetched = len(records)
            if stats.fetched >= next_report:
                emit(PHASE_FETCHING, f"Fetched {stats.fetched} records")
                next_report = (stats.fetched // FETCH_PROGRESS_INTERVAL + 1) * FETCH_PROGRESS_INTERVAL
        timing["fetch_seconds"] = time.monotonic() - phase_started
        metrics.record_sync_records("fetched", stats.fetched)
        return records

    def _write(self, config, rows, stats, errors, check) -> tuple[set[str], int]:
        key_column = config.key_mapping.target_column
        valid_keys: set[str] = set()
        keyed: list[tuple[int, dict[str, Any]]] = []
        for index, row in enumerate(rows):
            key = row.get(key_column)
            if key is None:
                stats.skipped += 1
                errors.append(f"Row without a value for key column {key_column} was skipped.")
                continue
            valid_keys.add(str(key))
            keyed.append((index, row))

        failures = 0
        for positions, group in _group_by_columns(keyed):
            check()
            outcome = self.writer.upsert(config.target_table, key_column, group)
            stats.inserted += outcome.inserted
            stats.updated += outcome.updated
            stats.unverified += outcome.unverified
            stats.skipped += outcome.skipped
            stats.failed += len(outcome.errors)
            failures += len(outcome.errors)
            errors.extend(
                f"Row {positions[error.row]} ({key_column}={group[error.row].get(key_column)}): {error.error}"
                for error in outcome.errors
            )
        metrics.record_sync_records("written", stats.inserted + stats.updated + stats.unverified)
        return valid_keys, failures
