"""Per-family queue settings for background jobs."""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import timedelta
from typing import Any, Mapping

EXPORT = "export"
THUMBNAIL = "thumbnail"
SYNC = "sync"


@dataclass(frozen=True)
class JobFamily:
    """
    Queue settings for one kind of job.

    ``lock_duration_seconds`` bounds a single job's run time and how long a
    shutdown waits for in-flight work. ``output_ttl`` sets ``expires_at`` on
    completed jobs that produce an artifact.
    """

    name: str
    queue_name: str
    task_name: str
    concurrency: int
    lock_duration_seconds: int
    output_ttl: timedelta | None = None
    storage_prefix: str | None = None
    max_retries: int = 0


EXPORT_FAMILY = JobFamily(
    name=EXPORT,
    queue_name="sync-exports",
    task_name="sync.jobs.export",
    concurrency=2,
    lock_duration_seconds=600,
    output_ttl=timedelta(hours=24),
    storage_prefix="exports",
)

THUMBNAIL_FAMILY = JobFamily(
    name=THUMBNAIL,
    queue_name="sync-thumbnails",
    task_name="sync.jobs.thumbnail",
    concurrency=1,
    lock_duration_seconds=1800,
    storage_prefix="thumbnails",
)

SYNC_FAMILY = JobFamily(
    name=SYNC,
    queue_name="sync-runs",
    task_name="sync.jobs.sync",
    concurrency=1,
    lock_duration_seconds=1800,
)

DEFAULT_FAMILIES: Mapping[str, JobFamily] = {
    EXPORT: EXPORT_FAMILY,
    THUMBNAIL: THUMBNAIL_FAMILY,
    SYNC: SYNC_FAMILY,
}


class UnknownJobFamilyError(KeyError):
    """Raised when a job family name is not registered."""


def family_from_config(name: str, config: Mapping[str, Any]) -> JobFamily:
    """Return the default settings for ``name`` with app config overrides applied."""
    try:
        family = DEFAULT_FAMILIES[name]
    except KeyError as exc:
        raise UnknownJobFamilyError(name) from exc

    prefix = f"SYNC_{name.upper()}"
    overrides: dict[str, Any] = {}
    concurrency = config.get(f"{prefix}_CONCURRENCY")
    if concurrency is not None:
        overrides["concurrency"] = max(int(concurrency), 1)
    lock_duration = config.get(f"{prefix}_LOCK_SECONDS")
    if lock_duration is not None:
        overrides["lock_duration_seconds"] = max(int(lock_duration), 1)
    ttl_hours = config.get(f"{prefix}_TTL_HOURS")
    if ttl_hours is not None and family.output_ttl is not None:
        overrides["output_ttl"] = timedelta(hours=float(ttl_hours))
    return replace(family, **overrides) if overrides else family
