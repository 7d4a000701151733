"""
Sync Celery tasks.

Job tasks only carry the job id; the queue service for the family loads the
payload from the job row and records the outcome there. They return the
process result instead of raising so a failed job never crashes the worker.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from celery import shared_task
from flask import current_app

from sync_app.engine.container import build_cleanup_service, get_job_service
from sync_app.engine.jobs import EXPORT, SYNC, THUMBNAIL


@shared_task(name="sync.healthcheck", bind=True)
def sync_healthcheck(self) -> dict[str, Any]:
    """
    Simple heartbeat task used by worker health checks.
    """
    now = datetime.now(timezone.utc)
    return {
        "status": "ok",
        "timestamp": now.isoformat(),
        "worker_hostname": self.request.hostname,
        "app_version": getattr(self.app, "user_options", {}).get("version"),
    }


def _process(family: str, job_id: int) -> dict[str, Any]:
    service = get_job_service(current_app, family)
    return service.process(job_id).to_dict()


@shared_task(name="sync.jobs.export", bind=True)
def process_export_job(self, *, job_id: int) -> dict[str, Any]:
    return _process(EXPORT, job_id)


@shared_task(name="sync.jobs.thumbnail", bind=True)
def process_thumbnail_job(self, *, job_id: int) -> dict[str, Any]:
    return _process(THUMBNAIL, job_id)


@shared_task(name="sync.jobs.sync", bind=True)
def process_sync_job(self, *, job_id: int) -> dict[str, Any]:
    return _process(SYNC, job_id)


@shared_task(name="sync.exports.cleanup", bind=True)
def cleanup_expired_exports(self) -> dict[str, Any]:
    """Delete expired and orphaned export artifacts; schedule with celery beat."""
    return build_cleanup_service(current_app).cleanup_expired()
