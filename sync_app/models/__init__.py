# sync_app/models/__init__.py
"""
Database models package
"""

from .base import BaseModel, db
from .jobs import TERMINAL_JOB_STATUSES, BackgroundJob, JobStatus
from .schema_cache import (
    FieldMapping,
    MappingAccessStatus,
    SchemaCacheCategory,
    SchemaTypeCache,
    SyncMappingRecord,
)

__all__ = [
    "db",
    "BaseModel",
    "BackgroundJob",
    "JobStatus",
    "TERMINAL_JOB_STATUSES",
    "FieldMapping",
    "MappingAccessStatus",
    "SchemaCacheCategory",
    "SchemaTypeCache",
    "SyncMappingRecord",
]
