"""
Data access for cached remote schemas and persisted field mappings.

Rows are keyed by a logical connection identifier. Everything here is
read-mostly: the introspection flow writes type rows, the configuration flow
writes field mappings, and the graph builder / mapping validator only read.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Iterable, Mapping, Sequence

from sqlalchemy import delete, select
from sqlalchemy.orm import Session

from sync_app.models import (
    FieldMapping,
    MappingAccessStatus,
    SchemaCacheCategory,
    SchemaTypeCache,
    db,
)

from .catalog import RemoteField, fields_from_introspection, is_protected_field

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MetafieldDefinition:
    owner_type: str
    namespace: str
    key: str
    type: str | None = None
    name: str | None = None


@dataclass(frozen=True)
class RemoteResource:
    name: str
    fields: Sequence[RemoteField]


@dataclass(frozen=True)
class RemoteSchema:
    """Remote side of a mapping as seen by the validator."""

    resources: Sequence[RemoteResource]
    metafield_definitions: Sequence[MetafieldDefinition] = ()


class SchemaCacheStore:
    """Read/write helper over ``schema_type_cache`` and ``field_mappings``."""

    def __init__(self, session: Session | None = None, *, log: logging.Logger | None = None):
        self.session = session or db.session
        self.logger = log or logger

    # ------------------------------------------------------------------ reads

    def has_entities(self, connection_id: str) -> bool:
        stmt = (
            select(SchemaTypeCache.id)
            .where(SchemaTypeCache.connection_id == connection_id)
            .where(SchemaTypeCache.category == SchemaCacheCategory.ENTITY)
            .limit(1)
        )
        return self.session.execute(stmt).first() is not None

    def get_entity_fields(self, connection_id: str, entity_name: str) -> list[RemoteField] | None:
        row = self._get_row(connection_id, SchemaCacheCategory.ENTITY, entity_name)
        if row is None:
            return None
        return self._decode_fields(row)

    def get_entities(self, connection_id: str) -> dict[str, list[RemoteField]]:
        """Return every cached entity keyed by type name, skipping malformed rows."""
        return self._decode_category(connection_id, SchemaCacheCategory.ENTITY)

    def get_object_types(self, connection_id: str) -> dict[str, list[RemoteField]]:
        """Load every cached nested object type in one query."""
        return self._decode_category(connection_id, SchemaCacheCategory.OBJECT_TYPE)

    def get_metafield_definitions(self, connection_id: str) -> list[MetafieldDefinition]:
        stmt = (
            select(SchemaTypeCache)
            .where(SchemaTypeCache.connection_id == connection_id)
            .where(SchemaTypeCache.category == SchemaCacheCategory.METAFIELD_DEFINITIONS)
            .order_by(SchemaTypeCache.type_name.asc())
        )
        definitions: list[MetafieldDefinition] = []
        for row in self.session.scalars(stmt):
            if not isinstance(row.schema_json, list):
                self._warn_malformed(row, "expected a list of metafield definitions")
                continue
            for entry in row.schema_json:
                if not isinstance(entry, Mapping) or not entry.get("namespace") or not entry.get("key"):
                    self._warn_malformed(row, f"invalid metafield definition {entry!r}")
                    continue
                definitions.append(
                    MetafieldDefinition(
                        owner_type=row.type_name,
                        namespace=str(entry["namespace"]),
                        key=str(entry["key"]),
                        type=entry.get("type"),
                        name=entry.get("name"),
                    )
                )
        return definitions

    def get_field_mappings(self, connection_id: str) -> dict[str, FieldMapping]:
        """Return persisted field mappings keyed by ``full_path``."""
        stmt = select(FieldMapping).where(FieldMapping.connection_id == connection_id)
        return {mapping.full_path: mapping for mapping in self.session.scalars(stmt)}

    def load_remote_schema(self, connection_id: str) -> RemoteSchema | None:
        """
        Assemble the remote schema view used by the mapping validator.

        Returns ``None`` when introspection has never populated the cache.
        """
        entities = self.get_entities(connection_id)
        if not entities:
            return None
        resources = tuple(RemoteResource(name=name, fields=tuple(fields)) for name, fields in entities.items())
        return RemoteSchema(
            resources=resources,
            metafield_definitions=tuple(self.get_metafield_definitions(connection_id)),
        )

    # ----------------------------------------------------------------- writes

    def store_type(
        self,
        connection_id: str,
        category: SchemaCacheCategory,
        type_name: str,
        fields: Iterable[RemoteField | Mapping[str, Any]],
        *,
        api_version: str | None = None,
    ) -> SchemaTypeCache:
        """Insert or replace one cached type row."""
        payload = [entry.to_dict() if isinstance(entry, RemoteField) else dict(entry) for entry in fields]
        row = self._get_row(connection_id, category, type_name)
        if row is None:
            row = SchemaTypeCache(connection_id=connection_id, category=category, type_name=type_name)
            self.session.add(row)
        row.schema_json = payload
        row.api_version = api_version
        row.fetched_at = datetime.now(timezone.utc)
        self.session.flush()
        return row

    def store_introspection(
        self,
        connection_id: str,
        type_payload: Mapping[str, Any],
        *,
        category: SchemaCacheCategory = SchemaCacheCategory.ENTITY,
        api_version: str | None = None,
    ) -> SchemaTypeCache:
        """Categorize a raw ``__type`` payload and cache it."""
        type_name = type_payload.get("name")
        if not type_name:
            raise ValueError("Introspection payload is missing the type name.")
        return self.store_type(
            connection_id,
            category,
            str(type_name),
            fields_from_introspection(type_payload),
            api_version=api_version,
        )

    def store_metafield_definitions(
        self,
        connection_id: str,
        owner_type: str,
        definitions: Iterable[Mapping[str, Any]],
    ) -> SchemaTypeCache:
        return self.store_type(
            connection_id,
            SchemaCacheCategory.METAFIELD_DEFINITIONS,
            owner_type,
            definitions,
        )

    def save_field_mapping(
        self,
        connection_id: str,
        entity_type: str,
        field_path: str,
        *,
        target_table: str | None = None,
        target_column: str | None = None,
        transform_type: str | None = None,
        transform_config: Mapping[str, Any] | None = None,
        enabled: bool = True,
        access_status: MappingAccessStatus = MappingAccessStatus.UNKNOWN,
    ) -> FieldMapping:
        """
        Create or update the mapping for ``entity_type.field_path``.

        Protected fields stay enabled regardless of the requested flag.
        """
        depth = 2 if "." in field_path else 1
        if field_path.count(".") > 1:
            raise ValueError(f"Field path '{field_path}' is nested deeper than two levels.")
        full_path = f"{entity_type}.{field_path}"
        protected = is_protected_field(entity_type, field_path)

        stmt = (
            select(FieldMapping)
            .where(FieldMapping.connection_id == connection_id)
            .where(FieldMapping.full_path == full_path)
        )
        mapping = self.session.scalars(stmt).first()
        if mapping is None:
            mapping = FieldMapping(
                connection_id=connection_id,
                entity_type=entity_type,
                field_path=field_path,
                full_path=full_path,
            )
            self.session.add(mapping)

        if protected and not enabled:
            self.logger.info(
                "Ignoring request to disable protected field mapping",
                extra={"sync_connection_id": connection_id, "sync_full_path": full_path},
            )
        mapping.depth = depth
        mapping.target_table = target_table
        mapping.target_column = target_column
        mapping.transform_type = transform_type
        mapping.transform_config = dict(transform_config) if transform_config else None
        mapping.enabled = True if protected else bool(enabled)
        mapping.is_protected = protected
        mapping.access_status = access_status
        self.session.flush()
        return mapping

    def clear(self, connection_id: str) -> int:
        """Remove every cached type row for the connection; mappings are kept."""
        result = self.session.execute(
            delete(SchemaTypeCache).where(SchemaTypeCache.connection_id == connection_id)
        )
        return result.rowcount or 0

    # ---------------------------------------------------------------- helpers

    def _get_row(
        self,
        connection_id: str,
        category: SchemaCacheCategory,
        type_name: str,
    ) -> SchemaTypeCache | None:
        stmt = (
            select(SchemaTypeCache)
            .where(SchemaTypeCache.connection_id == connection_id)
            .where(SchemaTypeCache.category == category)
            .where(SchemaTypeCache.type_name == type_name)
        )
        return self.session.scalars(stmt).first()

    def _decode_category(
        self,
        connection_id: str,
        category: SchemaCacheCategory,
    ) -> dict[str, list[RemoteField]]:
        stmt = (
            select(SchemaTypeCache)
            .where(SchemaTypeCache.connection_id == connection_id)
            .where(SchemaTypeCache.category == category)
            .order_by(SchemaTypeCache.id.asc())
        )
        decoded: dict[str, list[RemoteField]] = {}
        for row in self.session.scalars(stmt):
            fields = self._decode_fields(row)
            if fields is not None:
                decoded[row.type_name] = fields
        return decoded

    def _decode_fields(self, row: SchemaTypeCache) -> list[RemoteField] | None:
        if not isinstance(row.schema_json, list):
            self._warn_malformed(row, "schema_json is not a list")
            return None
        try:
            return [RemoteField.from_dict(entry) for entry in row.schema_json]
        except ValueError as exc:
            self._warn_malformed(row, str(exc))
            return None

    def _warn_malformed(self, row: SchemaTypeCache, reason: str) -> None:
        self.logger.warning(
            "Skipping malformed schema cache row",
            extra={
                "sync_connection_id": row.connection_id,
                "sync_schema_type": row.type_name,
                "sync_schema_category": row.category.value if row.category else None,
                "sync_error": reason,
            },
        )
