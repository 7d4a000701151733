"""
Durable job records shared by every job family (export, thumbnail, sync).

The queue layer owns a row from enqueue until it reaches a terminal status.
``cancelled`` may be written by an operator while a worker is still
``processing``; worker writes are conditional on the row still being
``processing`` so a cancellation is never overwritten.
"""

from __future__ import annotations

import enum
from datetime import datetime

from sqlalchemy import Enum, Index
from sqlalchemy.orm import Mapped, mapped_column

from .base import BaseModel, db


class JobStatus(str, enum.Enum):
    """Lifecycle states for a background job."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    EXPIRED = "expired"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_JOB_STATUSES


TERMINAL_JOB_STATUSES = frozenset(
    {JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED, JobStatus.EXPIRED}
)


class BackgroundJob(BaseModel):
    """Progress, metrics and output location of one queued unit of work."""

    __tablename__ = "background_jobs"

    id: Mapped[int] = mapped_column(primary_key=True)
    family: Mapped[str] = mapped_column(db.String(50), nullable=False, index=True)
    status: Mapped[JobStatus] = mapped_column(
        Enum(JobStatus, name="background_job_status_enum"),
        nullable=False,
        default=JobStatus.PENDING,
        index=True,
    )
    task_id: Mapped[str | None] = mapped_column(db.String(155), nullable=True, unique=True)
    payload_json: Mapped[dict | None] = mapped_column(db.JSON, nullable=True)
    progress_percent: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    current_step: Mapped[str | None] = mapped_column(db.String(50), nullable=True)
    current_step_detail: Mapped[str | None] = mapped_column(db.String(500), nullable=True)
    metrics_json: Mapped[dict | None] = mapped_column(db.JSON, nullable=True)
    output_location: Mapped[str | None] = mapped_column(db.String(500), nullable=True)
    output_filename: Mapped[str | None] = mapped_column(db.String(255), nullable=True)
    output_size_bytes: Mapped[int | None] = mapped_column(db.BigInteger, nullable=True)
    expires_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True), nullable=True)
    error_message: Mapped[str | None] = mapped_column(db.Text, nullable=True)
    retry_count: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    triggered_by: Mapped[str | None] = mapped_column(db.String(100), nullable=True)
    started_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True), nullable=True)
    finished_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("ix_background_jobs_family_status", "family", "status"),
        Index("ix_background_jobs_expires_at", "expires_at"),
    )

    def as_dict(self) -> dict:
        """Serialize the record in the shape polled by the UI."""
        return {
            "id": self.id,
            "family": self.family,
            "status": self.status.value if self.status else None,
            "progress_percent": self.progress_percent,
            "current_step": self.current_step,
            "current_step_detail": self.current_step_detail,
            "metrics": dict(self.metrics_json or {}),
            "output_location": self.output_location,
            "output_filename": self.output_filename,
            "output_size_bytes": self.output_size_bytes,
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
            "error_message": self.error_message,
            "retry_count": self.retry_count,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
        }
