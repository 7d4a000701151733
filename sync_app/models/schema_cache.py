"""
SQLAlchemy models backing the schema cache store.

Remote type definitions are cached per logical connection so the graph
builder and mapping validator never talk to the remote platform directly.
Field mappings and mapping configs live alongside them under the same
connection identifier.
"""

from __future__ import annotations

import enum
from datetime import datetime

from sqlalchemy import Enum, Index, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from .base import BaseModel, db


class SchemaCacheCategory(str, enum.Enum):
    """Kinds of cached remote schema rows."""

    ENTITY = "entity"
    OBJECT_TYPE = "object_type"
    METAFIELD_DEFINITIONS = "metafield_definitions"


class MappingAccessStatus(str, enum.Enum):
    """Whether the remote API currently grants access to a mapped field."""

    UNKNOWN = "unknown"
    GRANTED = "granted"
    DENIED = "denied"


class SchemaTypeCache(BaseModel):
    """One cached remote type (entity root or nested object type)."""

    __tablename__ = "schema_type_cache"

    id: Mapped[int] = mapped_column(primary_key=True)
    connection_id: Mapped[str] = mapped_column(db.String(100), nullable=False, index=True)
    category: Mapped[SchemaCacheCategory] = mapped_column(
        Enum(SchemaCacheCategory, name="schema_cache_category_enum"),
        nullable=False,
    )
    type_name: Mapped[str] = mapped_column(db.String(255), nullable=False)
    api_version: Mapped[str | None] = mapped_column(db.String(20), nullable=True)
    schema_json: Mapped[list | None] = mapped_column(db.JSON, nullable=True)
    fetched_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True), nullable=True)

    __table_args__ = (
        UniqueConstraint("connection_id", "category", "type_name", name="uq_schema_type_cache_type"),
        Index("ix_schema_type_cache_connection_category", "connection_id", "category"),
    )

    def __repr__(self) -> str:  # pragma: no cover - debugging helper
        return f"<SchemaTypeCache {self.connection_id}:{self.category.value}:{self.type_name}>"


class FieldMapping(BaseModel):
    """Persisted mapping of a remote field path onto a relational column."""

    __tablename__ = "field_mappings"

    id: Mapped[int] = mapped_column(primary_key=True)
    connection_id: Mapped[str] = mapped_column(db.String(100), nullable=False, index=True)
    entity_type: Mapped[str] = mapped_column(db.String(100), nullable=False)
    field_path: Mapped[str] = mapped_column(db.String(255), nullable=False)
    full_path: Mapped[str] = mapped_column(db.String(400), nullable=False)
    depth: Mapped[int] = mapped_column(db.Integer, nullable=False, default=1)
    target_table: Mapped[str | None] = mapped_column(db.String(255), nullable=True)
    target_column: Mapped[str | None] = mapped_column(db.String(255), nullable=True)
    transform_type: Mapped[str | None] = mapped_column(db.String(50), nullable=True)
    transform_config: Mapped[dict | None] = mapped_column(db.JSON, nullable=True)
    enabled: Mapped[bool] = mapped_column(db.Boolean, nullable=False, default=True)
    is_protected: Mapped[bool] = mapped_column(db.Boolean, nullable=False, default=False)
    access_status: Mapped[MappingAccessStatus] = mapped_column(
        Enum(MappingAccessStatus, name="mapping_access_status_enum"),
        nullable=False,
        default=MappingAccessStatus.UNKNOWN,
    )

    __table_args__ = (
        UniqueConstraint("connection_id", "full_path", name="uq_field_mappings_full_path"),
        db.CheckConstraint("depth IN (1, 2)", name="ck_field_mappings_depth"),
    )

    def as_dict(self) -> dict:
        return {
            "id": self.id,
            "entity_type": self.entity_type,
            "field_path": self.field_path,
            "full_path": self.full_path,
            "depth": self.depth,
            "target_table": self.target_table,
            "target_column": self.target_column,
            "transform_type": self.transform_type,
            "transform_config": self.transform_config,
            "enabled": self.enabled,
            "is_protected": self.is_protected,
            "access_status": self.access_status.value if self.access_status else None,
        }


class SyncMappingRecord(BaseModel):
    """A named mapping config (source resource to target table) stored as JSON."""

    __tablename__ = "sync_mappings"

    id: Mapped[str] = mapped_column(db.String(100), primary_key=True)
    connection_id: Mapped[str] = mapped_column(db.String(100), nullable=False, index=True)
    name: Mapped[str] = mapped_column(db.String(255), nullable=False)
    source_resource: Mapped[str] = mapped_column(db.String(100), nullable=False, index=True)
    target_table: Mapped[str] = mapped_column(db.String(255), nullable=False)
    config_json: Mapped[dict] = mapped_column(db.JSON, nullable=False)
    enabled: Mapped[bool] = mapped_column(db.Boolean, nullable=False, default=True)
    checksum: Mapped[str | None] = mapped_column(db.String(64), nullable=True)
