"""Fetch, filter, transform and write pipeline for bulk syncs and webhooks."""

from .filters import apply_filters, matches_filter
from .source import GraphQLRecordSource, RecordBatch, RecordSource, RemoteSourceError, build_query
from .sync_engine import (
    SYNC_FULL,
    SYNC_INCREMENTAL,
    SYNC_WEBHOOK,
    RunningSyncRegistry,
    SyncAlreadyRunningError,
    SyncEngine,
    SyncProgress,
    SyncResult,
    SyncStats,
)
from .webhook import (
    WebhookError,
    WebhookProcessor,
    WebhookResult,
    compute_signature,
    extract_key,
    flatten_payload,
    is_delete_topic,
    resource_for_topic,
    verify_signature,
)

__all__ = [
    "GraphQLRecordSource",
    "RecordBatch",
    "RecordSource",
    "RemoteSourceError",
    "RunningSyncRegistry",
    "SYNC_FULL",
    "SYNC_INCREMENTAL",
    "SYNC_WEBHOOK",
    "SyncAlreadyRunningError",
    "SyncEngine",
    "SyncProgress",
    "SyncResult",
    "SyncStats",
    "WebhookError",
    "WebhookProcessor",
    "WebhookResult",
    "apply_filters",
    "build_query",
    "compute_signature",
    "extract_key",
    "flatten_payload",
    "is_delete_topic",
    "matches_filter",
    "resource_for_topic",
    "verify_signature",
]
