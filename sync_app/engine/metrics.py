"""Prometheus metrics helpers for the sync engine."""

from __future__ import annotations

from typing import Literal

from prometheus_client import Counter, Gauge, Histogram

_queue_ready_gauge = Gauge(
    "sync_job_queue_ready",
    "Whether the broker-backed queue for a job family is ready (1) or not (0).",
    ["family"],
)
_job_counter = Counter(
    "sync_jobs_total",
    "Background jobs finished by family and outcome.",
    ["family", "outcome"],
)
_job_duration = Histogram(
    "sync_job_duration_seconds",
    "Duration of background job processing in seconds.",
    ["family"],
    buckets=(1, 5, 15, 30, 60, 120, 300, 600, 1800),
)
_writer_rows = Counter(
    "sync_writer_rows_total",
    "Rows handled by the database writer by dialect and outcome.",
    ["dialect", "outcome"],
)
_writer_chunk_failures = Counter(
    "sync_writer_chunk_failures_total",
    "Writer chunks that failed and were attributed to their rows.",
    ["dialect", "operation"],
)
_validation_counter = Counter(
    "sync_mapping_validations_total",
    "Mapping validations by outcome.",
    ["outcome"],
)
_record_counter = Counter(
    "sync_records_total",
    "Remote records processed by sync phase.",
    ["phase"],
)


def record_queue_ready(family: str, ready: bool) -> None:
    """Set the queue readiness gauge for a job family."""

    _queue_ready_gauge.labels(family=family).set(1 if ready else 0)


def record_job_outcome(
    family: str,
    outcome: Literal["completed", "failed", "cancelled", "skipped"],
    duration_seconds: float | None = None,
) -> None:
    """Capture the terminal outcome of one job."""

    _job_counter.labels(family=family, outcome=outcome).inc()
    if duration_seconds is not None:
        _job_duration.labels(family=family).observe(duration_seconds)


def record_writer_rows(dialect: str, outcome: str, count: int) -> None:
    if count:
        _writer_rows.labels(dialect=dialect, outcome=outcome).inc(count)


def record_writer_chunk_failure(dialect: str, operation: str) -> None:
    _writer_chunk_failures.labels(dialect=dialect, operation=operation).inc()


def record_validation(valid: bool) -> None:
    _validation_counter.labels(outcome="valid" if valid else "invalid").inc()


def record_sync_records(phase: str, count: int) -> None:
    """Increment per-phase record counters (fetched, filtered, failed, ...)."""

    if count:
        _record_counter.labels(phase=phase).inc(count)
