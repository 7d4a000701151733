"""Job processor running full, incremental and webhook syncs."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Callable

from sync_app.engine.pipeline.sync_engine import (
    PHASE_CLEANUP,
    PHASE_COMPLETED,
    PHASE_FETCHING,
    PHASE_STARTING,
    PHASE_TRANSFORMING,
    PHASE_WRITING,
    SYNC_FULL,
    SYNC_INCREMENTAL,
    SYNC_WEBHOOK,
    SyncEngine,
    SyncProgress,
)
from sync_app.engine.pipeline.webhook import WebhookProcessor

from .queue import JobContext, JobOutcome

PHASE_PERCENT = {
    PHASE_STARTING: 2,
    PHASE_FETCHING: 10,
    PHASE_TRANSFORMING: 50,
    PHASE_WRITING: 70,
    PHASE_CLEANUP: 85,
    PHASE_COMPLETED: 95,
}


class SyncJobError(RuntimeError):
    """Raised when a sync job finishes without success."""


def _parse_since(value: Any) -> datetime | None:
    if not value:
        return None
    if isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value).replace("Z", "+00:00"))


class SyncJobProcessor:
    def __init__(
        self,
        engine_factory: Callable[[], SyncEngine],
        webhook_factory: Callable[[], WebhookProcessor] | None = None,
    ):
        self.engine_factory = engine_factory
        self.webhook_factory = webhook_factory

    def __call__(self, context: JobContext) -> JobOutcome:
        payload = context.payload
        kind = str(payload.get("kind") or SYNC_FULL).lower()

        if kind == SYNC_WEBHOOK:
            return self._run_webhook(context)

        mapping_id = payload.get("mappingId")
        if not mapping_id:
            raise ValueError("Sync job payload requires a mappingId")

        def on_progress(progress: SyncProgress) -> None:
            context.update_progress(
                progress.phase,
                progress.message,
                PHASE_PERCENT.get(progress.phase),
                {
                    "fetched": progress.records_fetched,
                    "transformed": progress.records_transformed,
                    "written": progress.records_written,
                    "skipped": progress.records_skipped,
                    "errors": progress.errors,
                },
            )

        engine = self.engine_factory()
        options = {
            "dry_run": bool(payload.get("dryRun", False)),
            "on_progress": on_progress,
            "checkpoint": context.checkpoint,
        }
        if kind == SYNC_INCREMENTAL:
            lookback = payload.get("lookbackMinutes")
            if lookback is not None:
                options["lookback_minutes"] = int(lookback)
            result = engine.incremental_sync(mapping_id, since=_parse_since(payload.get("since")), **options)
        elif kind == SYNC_FULL:
            result = engine.full_sync(mapping_id, delete_stale=bool(payload.get("deleteStale", False)), **options)
        else:
            raise ValueError(f"Unknown sync kind '{kind}'")

        if not result.success:
            raise SyncJobError("; ".join(result.errors) or "Sync failed")
        return JobOutcome(metrics={**result.stats.to_dict(), "errors": result.errors, "duration": result.duration})

    def _run_webhook(self, context: JobContext) -> JobOutcome:
        if self.webhook_factory is None:
            raise ValueError("Webhook processing is not configured")
        topic = context.payload.get("topic")
        if not topic:
            raise ValueError("Webhook job payload requires a topic")
        context.update_progress(SYNC_WEBHOOK, f"Applying {topic}", 10)
        result = self.webhook_factory().process(topic, context.payload.get("payload") or {})
        if not result.success:
            raise SyncJobError("; ".join(result.errors))
        return JobOutcome(metrics=result.to_dict())
