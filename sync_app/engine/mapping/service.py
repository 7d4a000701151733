"""Persistence of mapping configs in the ``sync_mappings`` table."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Iterable

from sqlalchemy import select
from sqlalchemy.orm import Session

from sync_app.models import SyncMappingRecord, db

from .config import MappingConfig, MappingLoadError, load_mapping_config

logger = logging.getLogger(__name__)


class MappingNotFoundError(LookupError):
    """Raised when a mapping id has no stored config."""


class MappingService:
    """Load and store :class:`MappingConfig` objects for one connection."""

    def __init__(self, session: Session | None = None, *, connection_id: str = "default"):
        self.session = session or db.session
        self.connection_id = connection_id

    def get(self, mapping_id: str) -> MappingConfig | None:
        record = self.session.get(SyncMappingRecord, mapping_id)
        if record is None or record.connection_id != self.connection_id:
            return None
        return self._to_config(record)

    def require(self, mapping_id: str) -> MappingConfig:
        config = self.get(mapping_id)
        if config is None:
            raise MappingNotFoundError(f"Mapping '{mapping_id}' not found.")
        return config

    def list(self, *, enabled_only: bool = False) -> list[MappingConfig]:
        stmt = (
            select(SyncMappingRecord)
            .where(SyncMappingRecord.connection_id == self.connection_id)
            .order_by(SyncMappingRecord.created_at.desc(), SyncMappingRecord.id.asc())
        )
        if enabled_only:
            stmt = stmt.where(SyncMappingRecord.enabled.is_(True))
        return [self._to_config(record) for record in self.session.scalars(stmt)]

    def for_resource(self, source_resource: str) -> list[MappingConfig]:
        """Enabled mappings reading from ``source_resource``."""
        stmt = (
            select(SyncMappingRecord)
            .where(SyncMappingRecord.connection_id == self.connection_id)
            .where(SyncMappingRecord.source_resource == source_resource)
            .where(SyncMappingRecord.enabled.is_(True))
            .order_by(SyncMappingRecord.id.asc())
        )
        return [self._to_config(record) for record in self.session.scalars(stmt)]

    def save(self, config: MappingConfig, *, enabled: bool = True) -> SyncMappingRecord:
        record = self.session.get(SyncMappingRecord, config.id)
        if record is None:
            record = SyncMappingRecord(id=config.id, connection_id=self.connection_id)
            self.session.add(record)
        elif record.connection_id != self.connection_id:
            raise MappingLoadError(
                f"Mapping id '{config.id}' already belongs to connection '{record.connection_id}'."
            )
        record.name = config.name
        record.source_resource = config.source_resource
        record.target_table = config.target_table
        record.config_json = config.to_dict()
        record.checksum = config.checksum
        record.enabled = enabled
        self.session.flush()
        return record

    def import_files(self, paths: Iterable[str | Path]) -> list[MappingConfig]:
        """Load YAML configs and store them; the first bad file aborts the import."""
        configs = [load_mapping_config(path) for path in paths]
        for config in configs:
            self.save(config)
            logger.info(
                "Imported mapping config",
                extra={"sync_mapping_id": config.id, "sync_checksum": config.checksum},
            )
        return configs

    @staticmethod
    def _to_config(record: SyncMappingRecord) -> MappingConfig:
        return MappingConfig.from_dict(record.config_json)
