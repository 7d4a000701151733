"""
Generic broker-backed job queue, instantiated once per job family.

The Celery message only carries the job id; the payload, progress and output
live on the :class:`BackgroundJob` row. Cancellation is cooperative: an
operator flips the row to ``cancelled`` and the running processor notices it
at its next checkpoint or progress write. The final ``completed`` write is
conditional, so a cancellation that lands during the output upload wins and
the artifact is removed.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Mapping, Protocol, Sequence

from celery import Celery
from kombu.exceptions import OperationalError

from sync_app.engine import metrics
from sync_app.models import BackgroundJob, JobStatus

from .families import JobFamily
from .storage import LocalArtifactStorage, build_artifact_key
from .store import JobStore

logger = logging.getLogger(__name__)

STEP_UPLOADING = "uploading"
UPLOAD_PERCENT = 90
CANCELLED_REASON = "cancelled"


class JobCancelled(RuntimeError):
    """Raised inside a processor once cancellation has been observed."""


class JobQueueError(RuntimeError):
    """Raised when a job cannot be handed to the broker."""


class CancellationToken:
    """Thread-safe cancellation flag handed to a running processor."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise JobCancelled(CANCELLED_REASON)


@dataclass(frozen=True)
class JobArtifact:
    filename: str
    content: bytes
    content_type: str | None = None


@dataclass
class JobOutcome:
    artifact: JobArtifact | None = None
    metrics: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ProcessResult:
    job_id: int
    status: str
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {"job_id": self.job_id, "status": self.status, "error": self.error}


class JobContext:
    """What a processor sees of its job: payload, progress reporting and cancellation."""

    def __init__(
        self,
        job: BackgroundJob,
        family: JobFamily,
        store: JobStore,
        token: CancellationToken,
        *,
        log: logging.Logger | None = None,
    ):
        self.job_id = job.id
        self.family = family
        self.payload: dict[str, Any] = dict(job.payload_json or {})
        self.triggered_by = job.triggered_by
        self.store = store
        self.token = token
        self.logger = log or logger

    @property
    def cancelled(self) -> bool:
        return self.token.cancelled

    def checkpoint(self) -> None:
        """Raise :class:`JobCancelled` if the job is no longer ``processing``."""
        self.token.raise_if_cancelled()
        if self.store.status_of(self.job_id) != JobStatus.PROCESSING:
            self.token.cancel()
            raise JobCancelled(CANCELLED_REASON)

    def update_progress(
        self,
        step: str,
        detail: str | None = None,
        percent: int | None = None,
        metrics: Mapping[str, Any] | None = None,
    ) -> None:
        self.checkpoint()
        written = self.store.update_progress(
            self.job_id, step=step, detail=detail, percent=percent, metrics=metrics
        )
        if not written:
            self.token.cancel()
            raise JobCancelled(CANCELLED_REASON)


class JobProcessor(Protocol):
    def __call__(self, context: JobContext) -> JobOutcome:
        ...


class JobQueueService:
    """Enqueue, process, cancel and report on the jobs of one family."""

    def __init__(
        self,
        family: JobFamily,
        processor: JobProcessor,
        *,
        store: JobStore | None = None,
        storage: LocalArtifactStorage | None = None,
        celery_app: Celery | None = None,
        clock: Callable[[], datetime] | None = None,
        log: logging.Logger | None = None,
    ):
        self.family = family
        self.processor = processor
        self.store = store or JobStore()
        self.storage = storage
        self.celery_app = celery_app
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self.logger = log or logger
        self._ready = False
        self._closed = False
        self._lock = threading.Lock()
        self._idle = threading.Condition(self._lock)
        self._active = 0
        self._tokens: dict[int, CancellationToken] = {}

    # ------------------------------------------------------------ lifecycle

    def initialize(self) -> bool:
        """Check the broker; an unreachable broker leaves the queue not ready."""
        ready = False
        if self.celery_app is None:
            self.logger.info("No Celery app configured; jobs will run inline", extra=self._extra())
        elif self.celery_app.conf.task_always_eager:
            ready = True
        else:
            try:
                with self.celery_app.connection_for_write() as connection:
                    connection.ensure_connection(max_retries=1)
                ready = True
            except (OperationalError, OSError) as exc:
                self.logger.warning(
                    "Job broker unavailable; jobs will run inline",
                    extra=self._extra(sync_error=str(exc)),
                )
        self._ready = ready
        self._closed = False
        metrics.record_queue_ready(self.family.name, ready)
        return ready

    def is_ready(self) -> bool:
        return self._ready and not self._closed

    def shutdown(self, timeout: float | None = None) -> bool:
        """
        Stop accepting jobs and wait for in-flight ones.

        Waits at most the family's lock duration. Returns False when the
        queue was already shut down.
        """
        with self._lock:
            if self._closed:
                return False
            self._closed = True
            budget = self.family.lock_duration_seconds if timeout is None else timeout
            drained = self._idle.wait_for(lambda: self._active == 0, timeout=budget)
        if not drained:
            self.logger.warning("Shutdown timed out with jobs still running", extra=self._extra())
        if self.celery_app is not None:
            self.celery_app.close()
        metrics.record_queue_ready(self.family.name, False)
        self.logger.info("Job queue shut down", extra=self._extra())
        return True

    # -------------------------------------------------------------- enqueue

    def enqueue(
        self,
        payload: Mapping[str, Any] | None = None,
        *,
        job_id: int | None = None,
        triggered_by: str | None = None,
    ) -> BackgroundJob:
        """
        Hand a job to the broker.

        Passing an existing ``job_id`` re-enqueues that record; a job whose
        task was already sent is left alone. When the queue is not ready the
        job stays ``pending`` for the caller to :meth:`process` inline.
        """
        if job_id is None:
            job = self.store.create(self.family.name, payload, triggered_by=triggered_by)
        else:
            job = self.store.require(job_id)
        if not self.is_ready():
            self.logger.info("Queue not ready; job left pending", extra=self._extra(sync_job_id=job.id))
            return job

        task_id = f"{self.family.name}-{job.id}"
        if not self.store.claim_task(job.id, task_id):
            self.logger.info("Job already enqueued", extra=self._extra(sync_job_id=job.id))
            return self.store.require(job.id)

        task = self.celery_app.tasks[self.family.task_name]
        try:
            task.apply_async(
                kwargs={"job_id": job.id},
                task_id=task_id,
                queue=self.family.queue_name,
                time_limit=self.family.lock_duration_seconds,
            )
        except (OperationalError, OSError) as exc:
            self.store.release_task(job.id, task_id)
            raise JobQueueError(f"Failed to enqueue job {job.id}: {exc}") from exc
        self.logger.info("Job enqueued", extra=self._extra(sync_job_id=job.id, sync_task_id=task_id))
        return self.store.require(job.id)

    def cancel(self, job_id: int) -> bool:
        cancelled = self.store.cancel(job_id)
        with self._lock:
            token = self._tokens.get(job_id)
        if cancelled and token is not None:
            token.cancel()
        if cancelled:
            self.logger.info("Job cancelled", extra=self._extra(sync_job_id=job_id))
        return cancelled

    # -------------------------------------------------------------- process

    def process(self, job_id: int) -> ProcessResult:
        """Run one job to a terminal status; never raises for processor failures."""
        if not self.store.mark_processing(job_id):
            status = self.store.status_of(job_id)
            if status is None:
                return ProcessResult(job_id, "missing", error=f"Job {job_id} not found")
            self.logger.info(
                "Job not pending; skipping",
                extra=self._extra(sync_job_id=job_id, sync_status=status.value),
            )
            return ProcessResult(job_id, status.value, error=CANCELLED_REASON if status == JobStatus.CANCELLED else None)

        started = time.monotonic()
        token = CancellationToken()
        with self._lock:
            self._tokens[job_id] = token
            self._active += 1
        artifact_key: str | None = None
        try:
            job = self.store.require(job_id)
            context = JobContext(job, self.family, self.store, token, log=self.logger)
            outcome = self.processor(context) or JobOutcome()

            size = None
            filename = None
            if outcome.artifact is not None:
                context.update_progress(STEP_UPLOADING, f"Saving {outcome.artifact.filename}", UPLOAD_PERCENT)
                if self.storage is None:
                    raise JobQueueError(f"No artifact storage configured for {self.family.name} jobs")
                owner = context.payload.get("userId") or context.triggered_by
                artifact_key = build_artifact_key(
                    self.family.storage_prefix, job_id, outcome.artifact.filename, owner=owner, now=self.clock()
                )
                size = self.storage.save(artifact_key, outcome.artifact.content)
                filename = outcome.artifact.filename

            if self._is_cancelled(job_id) or token.cancelled:
                return self._finish_cancelled(job_id, artifact_key, started)

            expires_at = None
            if artifact_key and self.family.output_ttl is not None:
                expires_at = self.clock() + self.family.output_ttl
            completed = self.store.complete(
                job_id,
                output_location=artifact_key,
                output_filename=filename,
                output_size_bytes=size,
                expires_at=expires_at,
                metrics=outcome.metrics,
            )
            if not completed:
                return self._finish_cancelled(job_id, artifact_key, started)
            metrics.record_job_outcome(self.family.name, "completed", time.monotonic() - started)
            self.logger.info("Job completed", extra=self._extra(sync_job_id=job_id))
            return ProcessResult(job_id, JobStatus.COMPLETED.value)
        except JobCancelled:
            self.store.rollback()
            return self._finish_cancelled(job_id, artifact_key, started)
        except Exception as exc:  # processors may raise anything; the worker must survive
            self.store.rollback()
            if self._is_cancelled(job_id):
                return self._finish_cancelled(job_id, artifact_key, started)
            self._discard(artifact_key)
            message = str(exc) or exc.__class__.__name__
            self.store.fail(job_id, message)
            metrics.record_job_outcome(self.family.name, "failed", time.monotonic() - started)
            self.logger.exception("Job failed", extra=self._extra(sync_job_id=job_id))
            return ProcessResult(job_id, JobStatus.FAILED.value, error=message[: self.store.error_max_length])
        finally:
            with self._lock:
                self._tokens.pop(job_id, None)
                self._active -= 1
                self._idle.notify_all()

    # ---------------------------------------------------------------- stats

    def get_stats(self) -> dict[str, Any]:
        return {
            "family": self.family.name,
            "queue": self.family.queue_name,
            "ready": self.is_ready(),
            "concurrency": self.family.concurrency,
            "counts": self.store.counts_by_status(self.family.name),
        }

    def worker_argv(self, *, loglevel: str = "info", pool: str | None = None) -> list[str]:
        argv = [
            "worker",
            "--loglevel",
            loglevel,
            "-Q",
            self.family.queue_name,
            "--concurrency",
            str(self.family.concurrency),
            "--hostname",
            f"{self.family.name}@%h",
        ]
        if pool:
            argv.extend(["--pool", pool])
        return argv

    # -------------------------------------------------------------- helpers

    def _is_cancelled(self, job_id: int) -> bool:
        return self.store.status_of(job_id) == JobStatus.CANCELLED

    def _finish_cancelled(self, job_id: int, artifact_key: str | None, started: float) -> ProcessResult:
        self._discard(artifact_key)
        metrics.record_job_outcome(self.family.name, "cancelled", time.monotonic() - started)
        self.logger.info("Job observed cancellation", extra=self._extra(sync_job_id=job_id))
        return ProcessResult(job_id, JobStatus.CANCELLED.value, error=CANCELLED_REASON)

    def _discard(self, artifact_key: str | None) -> None:
        if artifact_key and self.storage is not None:
            self.storage.delete(artifact_key)

    def _extra(self, **values: Any) -> dict[str, Any]:
        return {"sync_job_family": self.family.name, **values}


def shutdown_all(services: Sequence[JobQueueService], timeout: float | None = None) -> None:
    for service in services:
        service.shutdown(timeout=timeout)
