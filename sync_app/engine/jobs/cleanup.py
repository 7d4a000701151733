"""Removal of expired export artifacts."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import and_, func, or_, select

from sync_app.models import BackgroundJob, JobStatus

from .families import EXPORT
from .storage import ArtifactStorageError, LocalArtifactStorage
from .store import JobStore

logger = logging.getLogger(__name__)


class ExportCleanupService:
    """
    Delete export artifacts that are no longer downloadable.

    Completed exports past ``expires_at`` become ``expired``. Cancelled
    exports that still reference an artifact keep their status and lose the
    file.
    """

    def __init__(
        self,
        storage: LocalArtifactStorage,
        *,
        store: JobStore | None = None,
        family: str = EXPORT,
        log: logging.Logger | None = None,
    ):
        self.storage = storage
        self.store = store or JobStore()
        self.family = family
        self.logger = log or logger

    def cleanup_expired(self, *, now: datetime | None = None) -> dict[str, Any]:
        now = now or datetime.now(timezone.utc)
        candidates = self.store.session.execute(
            select(BackgroundJob.id, BackgroundJob.status, BackgroundJob.output_location)
            .where(BackgroundJob.family == self.family)
            .where(BackgroundJob.output_location.is_not(None))
            .where(
                or_(
                    and_(BackgroundJob.status == JobStatus.COMPLETED, BackgroundJob.expires_at < now),
                    BackgroundJob.status == JobStatus.CANCELLED,
                )
            )
            .order_by(BackgroundJob.id)
        ).all()

        self.logger.info(
            "Export cleanup started",
            extra={"sync_job_family": self.family, "sync_candidates": len(candidates)},
        )
        deleted = 0
        error_details: list[str] = []
        for job_id, status, location in candidates:
            new_status = JobStatus.CANCELLED if status == JobStatus.CANCELLED else JobStatus.EXPIRED
            try:
                self.storage.delete(location)
            except (OSError, ArtifactStorageError) as exc:
                error_details.append(f"{job_id}: {exc}")
                self.logger.warning(
                    "Failed to delete export artifact",
                    extra={"sync_job_id": job_id, "sync_error": str(exc)},
                )
                continue
            self.store.clear_output(job_id, status=new_status, detail=f"File deleted on {now.isoformat()}")
            deleted += 1

        self.logger.info(
            "Export cleanup completed",
            extra={"sync_deleted": deleted, "sync_errors": len(error_details)},
        )
        return {"deleted": deleted, "errors": len(error_details), "error_details": error_details}

    def get_cleanup_stats(self, *, now: datetime | None = None) -> dict[str, int]:
        now = now or datetime.now(timezone.utc)
        session = self.store.session
        base = select(func.count()).select_from(BackgroundJob).where(BackgroundJob.family == self.family)
        pending = session.execute(
            base.where(BackgroundJob.status == JobStatus.COMPLETED)
            .where(BackgroundJob.expires_at < now)
            .where(BackgroundJob.output_location.is_not(None))
        ).scalar_one()
        cleaned = session.execute(base.where(BackgroundJob.status == JobStatus.EXPIRED)).scalar_one()
        completed = session.execute(base.where(BackgroundJob.status == JobStatus.COMPLETED)).scalar_one()
        return {"pending_cleanup": pending, "already_cleaned": cleaned, "total_completed": completed}
