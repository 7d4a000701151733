"""Durable background jobs: one queue service per family over a shared job table."""

from .cleanup import ExportCleanupService
from .export import ExportJobProcessor, RenderedExport
from .families import (
    DEFAULT_FAMILIES,
    EXPORT,
    EXPORT_FAMILY,
    SYNC,
    SYNC_FAMILY,
    THUMBNAIL,
    THUMBNAIL_FAMILY,
    JobFamily,
    UnknownJobFamilyError,
    family_from_config,
)
from .queue import (
    CancellationToken,
    JobArtifact,
    JobCancelled,
    JobContext,
    JobOutcome,
    JobQueueError,
    JobQueueService,
    ProcessResult,
)
from .storage import ArtifactStorageError, LocalArtifactStorage, build_artifact_key
from .store import JobNotFoundError, JobStore
from .sync import SyncJobError, SyncJobProcessor
from .thumbnail import ThumbnailJobProcessor

__all__ = [
    "ArtifactStorageError",
    "CancellationToken",
    "DEFAULT_FAMILIES",
    "EXPORT",
    "EXPORT_FAMILY",
    "ExportCleanupService",
    "ExportJobProcessor",
    "JobArtifact",
    "JobCancelled",
    "JobContext",
    "JobFamily",
    "JobNotFoundError",
    "JobOutcome",
    "JobQueueError",
    "JobQueueService",
    "JobStore",
    "LocalArtifactStorage",
    "ProcessResult",
    "RenderedExport",
    "SYNC",
    "SYNC_FAMILY",
    "SyncJobError",
    "SyncJobProcessor",
    "THUMBNAIL",
    "THUMBNAIL_FAMILY",
    "ThumbnailJobProcessor",
    "UnknownJobFamilyError",
    "build_artifact_key",
    "family_from_config",
]
