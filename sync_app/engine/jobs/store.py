"""
Durable job state transitions.

Every transition after creation is a single conditional ``UPDATE`` that
names the status it expects to replace. A zero row count means another
writer (usually an operator cancelling the job) got there first, and the
caller must not assume its transition happened.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Iterable, Mapping

from sqlalchemy import case, func, select, update
from sqlalchemy.orm import Session

from sync_app.engine.utils import normalize_payload, truncate
from sync_app.models import BackgroundJob, JobStatus, db

DEFAULT_ERROR_MAX_LENGTH = 500
STEP_DETAIL_MAX_LENGTH = 500


class JobNotFoundError(LookupError):
    """Raised when a job id has no record."""


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class JobStore:
    """Conditional reads and writes of :class:`BackgroundJob` rows."""

    def __init__(self, session: Session | None = None, *, error_max_length: int = DEFAULT_ERROR_MAX_LENGTH):
        self.session = session or db.session
        self.error_max_length = error_max_length

    # ---------------------------------------------------------------- reads

    def get(self, job_id: int) -> BackgroundJob | None:
        return self.session.get(BackgroundJob, job_id, populate_existing=True)

    def require(self, job_id: int) -> BackgroundJob:
        job = self.get(job_id)
        if job is None:
            raise JobNotFoundError(f"Job {job_id} not found.")
        return job

    def status_of(self, job_id: int) -> JobStatus | None:
        """Read the committed status without going through the identity map."""
        return self.session.execute(
            select(BackgroundJob.status).where(BackgroundJob.id == job_id)
        ).scalar_one_or_none()

    def list(self, family: str | None = None, *, limit: int = 50) -> list[BackgroundJob]:
        stmt = select(BackgroundJob).order_by(BackgroundJob.id.desc()).limit(limit)
        if family:
            stmt = stmt.where(BackgroundJob.family == family)
        return list(self.session.scalars(stmt))

    def counts_by_status(self, family: str) -> dict[str, int]:
        counts = {status.value: 0 for status in JobStatus}
        rows = self.session.execute(
            select(BackgroundJob.status, func.count())
            .where(BackgroundJob.family == family)
            .group_by(BackgroundJob.status)
        )
        for status, count in rows:
            counts[JobStatus(status).value] = count
        return counts

    # --------------------------------------------------------------- writes

    def create(
        self,
        family: str,
        payload: Mapping[str, Any] | None = None,
        *,
        triggered_by: str | None = None,
    ) -> BackgroundJob:
        job = BackgroundJob(
            family=family,
            status=JobStatus.PENDING,
            payload_json=normalize_payload(payload),
            progress_percent=0,
            retry_count=0,
            triggered_by=triggered_by,
        )
        self.session.add(job)
        self.session.commit()
        return job

    def claim_task(self, job_id: int, task_id: str) -> bool:
        """Attach a broker task id once; later enqueues of the same job are no-ops."""
        return self._transition(
            job_id,
            (JobStatus.PENDING,),
            {"task_id": task_id},
            extra_criteria=(BackgroundJob.task_id.is_(None),),
        )

    def release_task(self, job_id: int, task_id: str) -> bool:
        return self._transition(
            job_id,
            (JobStatus.PENDING,),
            {"task_id": None},
            extra_criteria=(BackgroundJob.task_id == task_id,),
        )

    def mark_processing(self, job_id: int, *, step: str = "starting") -> bool:
        return self._transition(
            job_id,
            (JobStatus.PENDING,),
            {
                "status": JobStatus.PROCESSING,
                "started_at": _utcnow(),
                "current_step": step,
                "current_step_detail": None,
                "error_message": None,
            },
        )

    def update_progress(
        self,
        job_id: int,
        *,
        step: str | None = None,
        detail: str | None = None,
        percent: int | None = None,
        metrics: Mapping[str, Any] | None = None,
    ) -> bool:
        values: dict[str, Any] = {}
        if step is not None:
            values["current_step"] = step[:50]
        if detail is not None:
            values["current_step_detail"] = truncate(detail, STEP_DETAIL_MAX_LENGTH)
        if percent is not None:
            bounded = max(0, min(int(percent), 100))
            # Pollers must never see progress go backwards.
            values["progress_percent"] = case(
                (BackgroundJob.progress_percent < bounded, bounded),
                else_=BackgroundJob.progress_percent,
            )
        if metrics is not None:
            values["metrics_json"] = normalize_payload(metrics)
        if not values:
            return self.status_of(job_id) == JobStatus.PROCESSING
        return self._transition(job_id, (JobStatus.PROCESSING,), values)

    def complete(
        self,
        job_id: int,
        *,
        output_location: str | None = None,
        output_filename: str | None = None,
        output_size_bytes: int | None = None,
        expires_at: datetime | None = None,
        metrics: Mapping[str, Any] | None = None,
    ) -> bool:
        values: dict[str, Any] = {
            "status": JobStatus.COMPLETED,
            "progress_percent": 100,
            "current_step": "completed",
            "finished_at": _utcnow(),
            "output_location": output_location,
            "output_filename": output_filename,
            "output_size_bytes": output_size_bytes,
            "expires_at": expires_at,
        }
        if metrics is not None:
            values["metrics_json"] = normalize_payload(metrics)
        return self._transition(job_id, (JobStatus.PROCESSING,), values)

    def fail(self, job_id: int, message: str) -> bool:
        return self._transition(
            job_id,
            (JobStatus.PENDING, JobStatus.PROCESSING),
            {
                "status": JobStatus.FAILED,
                "current_step": "failed",
                "error_message": truncate(message, self.error_max_length),
                "finished_at": _utcnow(),
                "retry_count": BackgroundJob.retry_count + 1,
            },
        )

    def cancel(self, job_id: int) -> bool:
        return self._transition(
            job_id,
            (JobStatus.PENDING, JobStatus.PROCESSING),
            {"status": JobStatus.CANCELLED, "current_step": "cancelled", "finished_at": _utcnow()},
        )

    def clear_output(self, job_id: int, *, status: JobStatus, detail: str | None = None) -> bool:
        """Forget a deleted artifact; completed exports move to ``expired``."""
        values: dict[str, Any] = {"output_location": None, "status": status, "current_step": status.value}
        if detail is not None:
            values["current_step_detail"] = truncate(detail, STEP_DETAIL_MAX_LENGTH)
        return self._transition(job_id, (JobStatus.COMPLETED, JobStatus.CANCELLED), values)

    def rollback(self) -> None:
        self.session.rollback()

    # -------------------------------------------------------------- helpers

    def _transition(
        self,
        job_id: int,
        expected: Iterable[JobStatus],
        values: Mapping[str, Any],
        *,
        extra_criteria: tuple = (),
    ) -> bool:
        stmt = (
            update(BackgroundJob)
            .where(BackgroundJob.id == job_id)
            .where(BackgroundJob.status.in_(list(expected)))
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        for criterion in extra_criteria:
            stmt = stmt.where(criterion)
        result = self.session.execute(stmt)
        self.session.commit()
        return (result.rowcount or 0) > 0
