from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

import pytest
from kombu.exceptions import OperationalError

from sync_app.engine.jobs import (
    EXPORT_FAMILY,
    SYNC_FAMILY,
    THUMBNAIL_FAMILY,
    ExportJobProcessor,
    JobOutcome,
    JobQueueError,
    JobQueueService,
    JobStore,
    LocalArtifactStorage,
    RenderedExport,
    ThumbnailJobProcessor,
)
from sync_app.models import JobStatus

FIXED_NOW = datetime(2024, 5, 6, 7, 8, 9, tzinfo=timezone.utc)


class FakeTask:
    def __init__(self, error=None):
        self.error = error
        self.calls = []

    def apply_async(self, **kwargs):
        if self.error is not None:
            raise self.error
        self.calls.append(kwargs)


class FakeCelery:
    """Just enough of a Celery app for enqueue and shutdown."""

    def __init__(self, tasks):
        self.conf = SimpleNamespace(task_always_eager=True)
        self.tasks = tasks
        self.closed = False

    def close(self):
        self.closed = True


def render_report(payload, progress):
    progress("rendering", "Writing rows", 40)
    return RenderedExport(filename="report.xlsx", content=b"xlsx-bytes", metrics={"rows": 3})


@pytest.fixture
def store():
    return JobStore()


@pytest.fixture
def storage(tmp_path):
    return LocalArtifactStorage(tmp_path / "artifacts")


@pytest.fixture
def export_service(store, storage):
    service = JobQueueService(
        EXPORT_FAMILY,
        ExportJobProcessor({"xlsx": render_report}),
        store=store,
        storage=storage,
        clock=lambda: FIXED_NOW,
    )
    service.initialize()
    return service


class TestJobStore:
    def test_create_starts_pending(self, store):
        job = store.create("export", {"type": "xlsx", "when": FIXED_NOW}, triggered_by="alice")

        assert job.status == JobStatus.PENDING
        assert job.payload_json == {"type": "xlsx", "when": FIXED_NOW.isoformat()}
        assert job.progress_percent == 0
        assert job.triggered_by == "alice"

    def test_only_one_writer_moves_a_job_to_processing(self, store):
        job = store.create("export")

        assert store.mark_processing(job.id) is True
        assert store.mark_processing(job.id) is False
        assert store.status_of(job.id) == JobStatus.PROCESSING

    def test_progress_never_goes_backwards(self, store):
        job = store.create("export")
        store.mark_processing(job.id)

        store.update_progress(job.id, step="rendering", percent=40)
        store.update_progress(job.id, step="rendering", percent=20, detail="x" * 600)

        refreshed = store.require(job.id)
        assert refreshed.progress_percent == 40
        assert len(refreshed.current_step_detail) == 500

    def test_progress_after_cancel_is_rejected(self, store):
        job = store.create("export")
        store.mark_processing(job.id)

        assert store.cancel(job.id) is True
        assert store.update_progress(job.id, percent=50) is False
        assert store.complete(job.id) is False
        assert store.require(job.id).status == JobStatus.CANCELLED

    def test_terminal_jobs_cannot_be_cancelled(self, store):
        job = store.create("export")
        store.mark_processing(job.id)
        store.complete(job.id)

        assert store.cancel(job.id) is False

    def test_fail_truncates_and_counts_retries(self):
        store = JobStore(error_max_length=10)
        job = store.create("export")

        assert store.fail(job.id, "a very long failure message") is True

        failed = store.require(job.id)
        assert failed.status == JobStatus.FAILED
        assert failed.error_message == "a very lon"
        assert failed.retry_count == 1
        assert failed.finished_at is not None

    def test_counts_by_status(self, store):
        store.create("export")
        done = store.create("export")
        store.mark_processing(done.id)
        store.complete(done.id)
        store.create("thumbnail")

        counts = store.counts_by_status("export")

        assert counts["pending"] == 1
        assert counts["completed"] == 1
        assert counts["failed"] == 0
        assert set(counts) == {status.value for status in JobStatus}


class TestJobProcessing:
    def test_export_completes_with_artifact(self, export_service, store, storage):
        job = store.create("export", {"type": "xlsx", "userId": "alice"})

        result = export_service.process(job.id)

        assert result.to_dict() == {"job_id": job.id, "status": "completed", "error": None}
        done = store.require(job.id)
        assert done.status == JobStatus.COMPLETED
        assert done.progress_percent == 100
        assert done.output_location == f"exports/2024-05/alice/{job.id}/report.xlsx"
        assert done.output_filename == "report.xlsx"
        assert done.output_size_bytes == len(b"xlsx-bytes")
        assert done.expires_at.replace(tzinfo=timezone.utc) == FIXED_NOW + timedelta(hours=24)
        assert done.metrics_json["rows"] == 3
        assert storage.read(done.output_location) == b"xlsx-bytes"

    def test_unknown_export_type_fails_the_job(self, export_service, store):
        job = store.create("export", {"type": "pdf"})

        result = export_service.process(job.id)

        assert result.status == "failed"
        assert result.error == "No renderer registered for export type 'pdf'"
        assert store.require(job.id).error_message == result.error

    def test_cancellation_during_render_is_observed(self, store, storage):
        job = store.create("export", {"type": "xlsx"})

        def render_and_get_cancelled(payload, progress):
            JobStore().cancel(job.id)
            progress("rendering", "Writing rows", 40)
            return RenderedExport(filename="report.xlsx", content=b"unused")

        service = JobQueueService(
            EXPORT_FAMILY,
            ExportJobProcessor({"xlsx": render_and_get_cancelled}),
            store=store,
            storage=storage,
        )

        result = service.process(job.id)

        assert result.status == "cancelled"
        assert store.require(job.id).status == JobStatus.CANCELLED
        assert store.require(job.id).output_location is None

    def test_cancellation_during_upload_removes_the_artifact(self, store, tmp_path):
        job = store.create("export", {"type": "xlsx"})
        saved = []

        class CancellingStorage(LocalArtifactStorage):
            def save(self, key, content):
                saved.append(key)
                size = super().save(key, content)
                JobStore().cancel(job.id)
                return size

        storage = CancellingStorage(tmp_path / "artifacts")
        service = JobQueueService(
            EXPORT_FAMILY,
            ExportJobProcessor({"xlsx": render_report}),
            store=store,
            storage=storage,
        )

        result = service.process(job.id)

        assert result.status == "cancelled"
        assert saved and not storage.exists(saved[0])
        assert store.require(job.id).status == JobStatus.CANCELLED

    def test_artifact_without_storage_fails(self, store):
        service = JobQueueService(EXPORT_FAMILY, ExportJobProcessor({"xlsx": render_report}), store=store)
        job = store.create("export", {"type": "xlsx"})

        result = service.process(job.id)

        assert result.status == "failed"
        assert result.error == "No artifact storage configured for export jobs"

    def test_jobs_are_processed_once(self, export_service, store):
        job = store.create("export", {"type": "xlsx"})
        export_service.process(job.id)

        again = export_service.process(job.id)

        assert again.status == "completed"
        assert again.error is None

    def test_missing_job(self, export_service):
        assert export_service.process(999).status == "missing"

    def test_thumbnail_counts(self, store):
        def generator(sku, sizes):
            assert sizes == [64]
            if sku == "B":
                return "skipped"
            if sku == "C":
                raise OSError("broken image")
            return f"/thumbs/{sku}.png"

        service = JobQueueService(THUMBNAIL_FAMILY, ThumbnailJobProcessor(generator, max_workers=2), store=store)
        job = store.create("thumbnail", {"skuIds": ["A", "B", "C"], "sizes": [64]})

        result = service.process(job.id)

        assert result.status == "completed"
        assert store.require(job.id).metrics_json == {"total": 3, "processed": 1, "skipped": 1, "failed": 1}

    def test_thumbnail_uses_sku_provider(self, store):
        processor = ThumbnailJobProcessor(lambda sku, sizes: "ok", sku_provider=lambda: ["X", "Y"])
        service = JobQueueService(THUMBNAIL_FAMILY, processor, store=store)
        job = store.create("thumbnail")

        service.process(job.id)

        assert store.require(job.id).metrics_json["processed"] == 2

    def test_thumbnail_without_generator_fails(self, store):
        service = JobQueueService(THUMBNAIL_FAMILY, ThumbnailJobProcessor(), store=store)
        job = store.create("thumbnail", {"skuIds": ["A"]})

        assert service.process(job.id).error == "No thumbnail generator configured"


class TestEnqueue:
    def test_without_celery_jobs_stay_pending(self, store):
        service = JobQueueService(SYNC_FAMILY, lambda context: JobOutcome(), store=store)

        assert service.initialize() is False
        job = service.enqueue({"mappingId": "products"}, triggered_by="cli")

        assert job.status == JobStatus.PENDING
        assert job.task_id is None

    def test_enqueue_sends_the_job_id_once(self, store):
        task = FakeTask()
        service = JobQueueService(
            SYNC_FAMILY,
            lambda context: JobOutcome(),
            store=store,
            celery_app=FakeCelery({"sync.jobs.sync": task}),
        )
        assert service.initialize() is True

        job = service.enqueue({"mappingId": "products"})
        service.enqueue(job_id=job.id)

        assert task.calls == [
            {
                "kwargs": {"job_id": job.id},
                "task_id": f"sync-{job.id}",
                "queue": "sync-runs",
                "time_limit": 1800,
            }
        ]
        assert store.require(job.id).task_id == f"sync-{job.id}"

    def test_broker_failure_releases_the_task_id(self, store):
        task = FakeTask(error=OperationalError("broker down"))
        service = JobQueueService(
            SYNC_FAMILY,
            lambda context: JobOutcome(),
            store=store,
            celery_app=FakeCelery({"sync.jobs.sync": task}),
        )
        service.initialize()
        job = store.create("sync", {"mappingId": "products"})

        with pytest.raises(JobQueueError, match=f"Failed to enqueue job {job.id}: broker down"):
            service.enqueue(job_id=job.id)

        assert store.require(job.id).task_id is None
        assert store.require(job.id).status == JobStatus.PENDING

    def test_shutdown_closes_celery_and_stops_enqueue(self, store):
        celery_app = FakeCelery({"sync.jobs.sync": FakeTask()})
        service = JobQueueService(SYNC_FAMILY, lambda context: JobOutcome(), store=store, celery_app=celery_app)
        service.initialize()

        assert service.shutdown(timeout=0) is True
        assert celery_app.closed is True
        assert service.is_ready() is False
        assert service.enqueue({"mappingId": "products"}).task_id is None

    def test_cancel_pending_job(self, store):
        service = JobQueueService(SYNC_FAMILY, lambda context: JobOutcome(), store=store)
        job = service.enqueue({"mappingId": "products"})

        assert service.cancel(job.id) is True
        assert service.cancel(job.id) is False
        assert service.process(job.id).to_dict() == {"job_id": job.id, "status": "cancelled", "error": "cancelled"}

    def test_stats(self, store):
        service = JobQueueService(SYNC_FAMILY, lambda context: JobOutcome(), store=store)
        service.enqueue({"mappingId": "products"})

        stats = service.get_stats()

        assert stats["family"] == "sync"
        assert stats["queue"] == "sync-runs"
        assert stats["ready"] is False
        assert stats["counts"]["pending"] == 1
